from src.ledger.analytics import AnalyticsEngine
from src.ledger.count_session import CountSessionEngine, QuickScanResult
from src.ledger.identity_resolver import IdentityResolver, Resolution, ResolutionOutcome
from src.ledger.ledger_store import LedgerSnapshot, LedgerStore
from src.ledger.service import StockLedgerService, build_service

__all__ = [
    "AnalyticsEngine",
    "CountSessionEngine",
    "IdentityResolver",
    "LedgerSnapshot",
    "LedgerStore",
    "QuickScanResult",
    "Resolution",
    "ResolutionOutcome",
    "StockLedgerService",
    "build_service",
]
