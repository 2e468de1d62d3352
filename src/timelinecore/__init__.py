from .config import LogLevel, TimelineConfig, load_config_from_env
from .exceptions import (
    CycleDetectedError,
    DatabaseConnectionError,
    InvalidParentError,
    NotFoundError,
    StoreError,
    TimelineError,
    UnauthorizedError,
    ValidationError,
)
from .hierarchy import HierarchyStore
from .logging import (
    TimelineFormatter,
    TimelineLoggerAdapter,
    get_logger,
    mask_metadata,
    redact_secrets,
    safe_log_value,
    safe_preview,
    setup_logging,
)
from .models import (
    AccessDecision,
    BatchAuthorization,
    DecisionSource,
    NodeKind,
    NodePolicy,
    Organization,
    OrganizationType,
    OrgMember,
    OrgRole,
    PermissionAction,
    PolicyEffect,
    PolicySpec,
    SubjectType,
    TimelineNode,
    VisibilityLevel,
    VisibleNode,
)
from .organizations import OrganizationIndex
from .permissions import (
    BatchAccessFilter,
    MemoryPermissionCache,
    PermissionResolver,
    PolicyStore,
    RedisPermissionCache,
    decide,
)
from .service import TimelineService
from .storage import Database

__all__ = [
    'AccessDecision',
    'BatchAccessFilter',
    'BatchAuthorization',
    'CycleDetectedError',
    'Database',
    'DatabaseConnectionError',
    'DecisionSource',
    'HierarchyStore',
    'InvalidParentError',
    'LogLevel',
    'MemoryPermissionCache',
    'NodeKind',
    'NodePolicy',
    'NotFoundError',
    'OrgMember',
    'OrgRole',
    'Organization',
    'OrganizationIndex',
    'OrganizationType',
    'PermissionAction',
    'PermissionResolver',
    'PolicyEffect',
    'PolicySpec',
    'PolicyStore',
    'RedisPermissionCache',
    'StoreError',
    'SubjectType',
    'TimelineConfig',
    'TimelineError',
    'TimelineFormatter',
    'TimelineLoggerAdapter',
    'TimelineNode',
    'TimelineService',
    'UnauthorizedError',
    'ValidationError',
    'VisibilityLevel',
    'VisibleNode',
    'decide',
    'get_logger',
    'load_config_from_env',
    'mask_metadata',
    'redact_secrets',
    'safe_log_value',
    'safe_preview',
    'setup_logging',
]
