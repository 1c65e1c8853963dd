from .interface import CommandResult, RemoteExecutor, run_checked

__all__ = ["CommandResult", "RemoteExecutor", "run_checked"]
