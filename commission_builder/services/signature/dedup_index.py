"""Run-scoped content-hash index.

Maps every digest seen during a run to the signature that produced it. A
second signature arriving under an already-registered digest is a hash
collision and aborts the run.
"""

import threading
from typing import Dict, Optional

from commission_builder.core.exceptions import IntegrityError
from commission_builder.services.signature.signature_computer import (
    DigestFn,
    Signature,
    canonical_bytes,
    compute_hash,
    sha256_digest,
)
from commission_builder.utils.logging import get_logger

LOGGER = get_logger(__name__)


class DedupIndex:
    """Digest -> signature registry with an atomic check-then-insert.

    One instance per run; never share it between runs.
    """

    def __init__(self):
        self._entries: Dict[str, Signature] = {}
        self._lock = threading.Lock()

    def register_or_verify(self, digest: str, signature: Signature) -> None:
        """Register a digest, or verify it maps to the same signature.

        Signatures are compared by their canonical bytes, the same form the
        digest is computed over.

        Raises:
            IntegrityError: When the digest is already registered for a
                different signature.
        """
        with self._lock:
            existing = self._entries.get(digest)
            if existing is None:
                self._entries[digest] = signature
                return
            if canonical_bytes(existing) != canonical_bytes(signature):
                LOGGER.error(
                    "Hash collision between distinct signatures",
                    extra={"digest": digest},
                )
                raise IntegrityError(
                    f"Hash collision on {digest}: digest already registered for a different signature",
                    digest=digest,
                )

    def get(self, digest: str) -> Optional[Signature]:
        with self._lock:
            return self._entries.get(digest)

    def __contains__(self, digest: str) -> bool:
        with self._lock:
            return digest in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ContentHasher:
    """Computes a signature's digest and registers it in the run's index."""

    def __init__(self, index: Optional[DedupIndex] = None, digest_fn: DigestFn = sha256_digest):
        """Initialize the hasher.

        Args:
            index: Run-scoped index; a fresh one is created when omitted
            digest_fn: Digest over canonical bytes; tests inject a weak one
                to engineer collisions
        """
        self.index = index if index is not None else DedupIndex()
        self.digest_fn = digest_fn

    def hash(self, signature: Signature) -> str:
        digest = compute_hash(signature, self.digest_fn)
        self.index.register_or_verify(digest, signature)
        return digest
