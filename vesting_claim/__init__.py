from .config import Config, load_config
from .orchestrator import ClaimOrchestrator, Outcome, Phase

__version__ = "0.1.0"
