from phasegate.state.ledger import LedgerError, RunLedger
from phasegate.state.locks import LockTimeoutError, exclusive_lock
from phasegate.state.snapshots import Snapshot, SnapshotStore

__all__ = [
    "LedgerError",
    "LockTimeoutError",
    "RunLedger",
    "Snapshot",
    "SnapshotStore",
    "exclusive_lock",
]
