from nmbatch.executors.local import LocalExecutor
from nmbatch.executors.sge import SgeExecutor

__all__ = ["LocalExecutor", "SgeExecutor"]
