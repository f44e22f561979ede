# Lazy imports so importing a helper module does not pull in the whole engine
def __getattr__(name):
    if name == "RecordNormalizer":
        from ledgerlink.services.normalizer import RecordNormalizer
        return RecordNormalizer
    elif name == "MultiFactorScorer":
        from ledgerlink.services.multi_factor_scoring import MultiFactorScorer
        return MultiFactorScorer
    elif name == "MatchingChain":
        from ledgerlink.services.matching import MatchingChain
        return MatchingChain
    elif name == "ReconciliationApplier":
        from ledgerlink.services.applier import ReconciliationApplier
        return ReconciliationApplier
    elif name == "ReconciliationRunner":
        from ledgerlink.services.reconciliation_runner import ReconciliationRunner
        return ReconciliationRunner
    raise AttributeError(f"module 'ledgerlink.services' has no attribute '{name}'")
