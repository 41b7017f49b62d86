"""
Rebus Hash Ledger.

SHA-256 based change detection for fragment files.
Requires Python 3.11+.
"""

import hashlib

from rebus.utils.logger import LoggerMixin


class HashLedger(LoggerMixin):
    """
    Remembers the digest of the content last applied from each fragment.

    A fragment is only applied again when its digest differs from the one
    recorded here, which makes identical republishes no-ops. Entries are
    only recorded after a successful parse, so a half-written file never
    poisons the dedup.
    """

    def __init__(self) -> None:
        # Cache: filename -> hex digest
        self._digests: dict[str, str] = {}

    @staticmethod
    def digest(data: bytes) -> str:
        """
        Compute the content digest of raw fragment bytes.

        Args:
            data: Raw file content

        Returns:
            SHA-256 hash as hex string
        """
        return hashlib.sha256(data).hexdigest()

    def get(self, filename: str) -> str | None:
        """Get the last applied digest for a fragment."""
        return self._digests.get(filename)

    def is_current(self, filename: str, digest: str) -> bool:
        """Check whether ``digest`` is what was last applied for ``filename``."""
        return self._digests.get(filename) == digest

    def record(self, filename: str, digest: str) -> None:
        """Record a successfully applied digest."""
        previous = self._digests.get(filename)
        self._digests[filename] = digest
        self.log.debug(
            "digest_recorded",
            filename=filename,
            digest=digest[:12],
            previous=previous[:12] if previous else None,
        )

    def __contains__(self, filename: object) -> bool:
        return filename in self._digests

    def __len__(self) -> int:
        return len(self._digests)
