from .audit import AuditEngine, AuditMode
from .authorized_keys import ContentRenderer
from .bootstrap import BootstrapWorkflow, SessionReaper, SessionStatus
from .config_types import EngineConfig
from .decommission import DecommissionOptions, DecommissionWorkflow
from .deploy import DeployService
from .deployer import AtomicFileDeployer
from .errors import DriftDetectedError, KeymasterError, NotDeployedError, TransportError
from .fleet import FleetRunner, summarize
from .memory_store import InMemoryStore
from .secret import Secret
from .transport import ParamikoTransportFactory, TrustPolicy

__all__ = [
    "AtomicFileDeployer",
    "AuditEngine",
    "AuditMode",
    "BootstrapWorkflow",
    "ContentRenderer",
    "DecommissionOptions",
    "DecommissionWorkflow",
    "DeployService",
    "DriftDetectedError",
    "EngineConfig",
    "FleetRunner",
    "InMemoryStore",
    "KeymasterError",
    "NotDeployedError",
    "ParamikoTransportFactory",
    "Secret",
    "SessionReaper",
    "SessionStatus",
    "TransportError",
    "TrustPolicy",
    "summarize",
]
