from shipyard.state.locks import LockHandle, LockManager, LockState
from shipyard.state.store import StateDirectory

__all__ = ["LockHandle", "LockManager", "LockState", "StateDirectory"]
