"""
Check Hub Package

Modules:
- scheduler: leader-gated poller with per-target intervals
- providers: vendor probe strategies and the batch runner
- snapshot: single-flight snapshot cache and the dashboard read side
- official_status: vendor status page poller
- api / main: FastAPI app and entry point
"""

__version__ = "0.1.0"

from .config import AppConfig, load_config
from .models import CheckResult, HealthStatus, ProviderType, RefreshMode, Target
from .providers import CheckRunner
from .scheduler import CheckScheduler
from .snapshot import SnapshotCache, SnapshotService

__all__ = [
    "AppConfig",
    "load_config",
    "CheckResult",
    "HealthStatus",
    "ProviderType",
    "RefreshMode",
    "Target",
    "CheckRunner",
    "CheckScheduler",
    "SnapshotCache",
    "SnapshotService",
]
