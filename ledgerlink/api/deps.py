"""FastAPI dependencies for Ledgerlink core services."""
from ledgerlink.di.container import container


def get_runner():
    return container.runner()


def get_run_history():
    return container.run_history()
