from importlib.metadata import version

from .config import AdsInputConfig, load_config
from .connector import AdsInput, SessionState
from .pipeline import INPUTS, BatchInput, StreamMessage, build_input, run_input

__version__ = version("ads-stream")
del version

__all__ = [
    "__version__",
    "AdsInput",
    "AdsInputConfig",
    "BatchInput",
    "INPUTS",
    "SessionState",
    "StreamMessage",
    "build_input",
    "load_config",
    "run_input",
]
