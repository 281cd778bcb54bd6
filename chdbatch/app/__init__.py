"""App-level APIs.

Thin controller functions intended to be called by a GUI or the CLI. They
keep the shells decoupled from the pipelines and the external tools.
"""

from .controller import preflight, run_conversion, run_verification
from .events import EventSinks
from .models import BatchReport, CancelToken, ConversionRequest, VerificationRequest

__all__ = [
    "BatchReport",
    "CancelToken",
    "ConversionRequest",
    "EventSinks",
    "VerificationRequest",
    "preflight",
    "run_conversion",
    "run_verification",
]
