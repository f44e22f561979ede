from ledgerlink.api.reconciliation import router as reconciliation_router

__all__ = ["reconciliation_router"]
