from .base import LedgerPage, LedgerQueryService, Signer, SubmitResult
from .jsonrpc import JsonRpcLedgerClient
from .signer import DryRunSigner

__all__ = [
    "DryRunSigner",
    "JsonRpcLedgerClient",
    "LedgerPage",
    "LedgerQueryService",
    "Signer",
    "SubmitResult",
]
