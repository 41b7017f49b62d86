"""
Rebus Paths.

Dotted paths address nodes of the shared tree. Fragment filenames encode the
path at which their content is installed: ``a.b.c.json`` -> ``("a", "b", "c")``.
Requires Python 3.11+.
"""

from dataclasses import dataclass

from rebus.errors import RebusUsageError
from rebus.utils.config import RebusSettings

TreePath = tuple[str, ...]

ROOT: TreePath = ()


def format_path(path: TreePath, delimiter: str = ".") -> str:
    """Render a path back to its dotted form (empty string for the root)."""
    return delimiter.join(path)


@dataclass(frozen=True, slots=True)
class FragmentNaming:
    """
    Maps between dotted paths and fragment filenames.

    Attributes:
        suffix: File extension of every fragment, dot included
        delimiter: Segment separator in both paths and filenames
        hidden_prefix: Filenames starting with this are never loaded
    """

    suffix: str = ".json"
    delimiter: str = "."
    hidden_prefix: str = "."

    @classmethod
    def from_settings(cls, settings: RebusSettings) -> "FragmentNaming":
        return cls(
            suffix=settings.suffix,
            delimiter=settings.delimiter,
            hidden_prefix=settings.hidden_prefix,
        )

    def parse(self, dotted: str) -> TreePath:
        """
        Split a caller-supplied dotted path into segments.

        Args:
            dotted: Path such as ``"a.b.c"``

        Returns:
            Tuple of segments

        Raises:
            RebusUsageError: If the path is not a string, is empty, or has an
                empty segment
        """
        if not isinstance(dotted, str):
            raise RebusUsageError(f"path must be a string, got {type(dotted).__name__}")
        if not dotted:
            raise RebusUsageError("path must not be empty")
        segments = tuple(dotted.split(self.delimiter))
        if any(not segment for segment in segments):
            raise RebusUsageError(f"path {dotted!r} has an empty segment")
        if any(os_sep in dotted for os_sep in ("/", "\\")):
            raise RebusUsageError(f"path {dotted!r} must not contain path separators")
        return segments

    def is_candidate(self, filename: str) -> bool:
        """Whether a directory entry should be treated as a fragment at all."""
        return (
            not filename.startswith(self.hidden_prefix)
            and filename.endswith(self.suffix)
            and len(filename) > len(self.suffix)
        )

    def path_for(self, filename: str) -> TreePath | None:
        """
        Derive the tree path of a fragment file.

        Returns None for hidden files, foreign files and names with empty
        segments.
        """
        if not self.is_candidate(filename):
            return None
        segments = tuple(filename[: -len(self.suffix)].split(self.delimiter))
        if any(not segment for segment in segments):
            return None
        return segments

    def filename_for(self, path: TreePath) -> str:
        """Fragment filename holding the value published at ``path``."""
        return format_path(path, self.delimiter) + self.suffix
