from ._version import __version__
from .balancer import Balancer, load_weight, select_condition
from .concurrency import BalanceLock, retry_on_busy
from .config import BalancerConfig, BalancerSecrets
from .exceptions import (
    AlreadyCompleted,
    AssignmentFailed,
    BalancerError,
    ConfirmationFailed,
    ConstraintViolation,
    LockTimeout,
    NotFound,
    OperationFailed,
    RetriesExhausted,
    StoreBusy,
    StoreError,
)
from .store import COMPLETED, PENDING, Assignment, ConditionCounter, create_store
