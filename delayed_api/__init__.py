from delayed_api.cancellation import CancellationToken, Outcome
from delayed_api.client import RequestOrchestrator
from delayed_api.models import Mode
from delayed_api.responses import SignalResponse, StreamingDelayResponse

__all__ = [
    "CancellationToken",
    "Mode",
    "Outcome",
    "RequestOrchestrator",
    "SignalResponse",
    "StreamingDelayResponse",
]
__version__ = "0.1.0"
