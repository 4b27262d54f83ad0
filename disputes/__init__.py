from .bridge import DisputeBridge, DisputeOutcome, Settlement

__all__ = ["DisputeBridge", "DisputeOutcome", "Settlement"]
