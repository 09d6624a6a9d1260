"""
Batch Ledger - Canonical Entry Point

All quantity movements go through this package. Each operation is one atomic
unit over locked batch rows; nothing else should write remaining_quantity,
custodian or status.
"""

from ._locking import lock_batch, lock_batches
from ._ops import (
    consume,
    create_root,
    purchase,
    return_batch,
    reverse,
    split,
    transfer_partial,
    transfer_whole,
)
from ._queries import conservation_report, get_batch, get_batch_by_code, list_batches
from ._results import BatchResult, ReversalResult, SplitResult, TransferResult
from ._state import AVAILABLE_AGAIN_STATUSES, TERMINAL_STATUSES, can_transition

# Public API
__all__ = [
    'create_root',
    'split',
    'transfer_whole',
    'transfer_partial',
    'purchase',
    'consume',
    'reverse',
    'return_batch',
    'get_batch',
    'get_batch_by_code',
    'list_batches',
    'conservation_report',
    'lock_batch',
    'lock_batches',
    'can_transition',
    'AVAILABLE_AGAIN_STATUSES',
    'TERMINAL_STATUSES',
    'BatchResult',
    'SplitResult',
    'TransferResult',
    'ReversalResult',
]
