"""
Error taxonomy for the retrieval core.

Synchronous validation failures raise. Batch operations never raise for a
single bad item; they collect the exception in their result instead.
"""


class SonagraphError(Exception):
    """Base exception for all sonagraph errors."""


class InvalidInput(SonagraphError, ValueError):
    """Malformed input. The caller must fix it and retry."""


class InvalidEdge(InvalidInput):
    """Hyperedge with empty endpoints, bad strength or unknown relation type."""


class DimensionMismatch(InvalidInput):
    """Vector length differs from the configured dimensionality."""

    def __init__(self, expected: int, got: int):
        super().__init__(f"Expected {expected}-dim vector, got {got}")
        self.expected = expected
        self.got = got


class NotFound(SonagraphError, KeyError):
    """Unknown node, edge, vector, trajectory or checkpoint."""

    def __str__(self):
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


class AlreadyFed(SonagraphError):
    """Feedback already recorded for a trajectory under the reject policy."""


class CodebookMismatch(SonagraphError):
    """Decompression against a missing or incompatible codebook version."""


class CodebookRejected(CodebookMismatch):
    """Trained codebook misses a tier's error bound; nothing was committed."""

    def __init__(self, tier: str, mean_error: float, epsilon: float):
        super().__init__(f"Codebook mean error {mean_error:.4f} exceeds {tier} bound {epsilon:.4f}")
        self.tier = tier
        self.mean_error = mean_error
        self.epsilon = epsilon


class ProviderUnavailable(SonagraphError):
    """The external embedding provider failed or timed out."""


class DriftCritical(UserWarning):
    """Issued when accumulated weight drift crosses the critical threshold."""
