# =============================================================================
# App Package - Process Entry Points
# =============================================================================
# - api_handler: API Gateway Lambda / HTTP routes
# - worker_handler: SQS-triggered Lambda and long-running worker
# - bootstrap: wiring and run_service for adapter processes
# =============================================================================

from concierge.app.api_handler import api_handler, ApiApp
from concierge.app.worker_handler import worker_handler, run_worker
from concierge.app.bootstrap import run_service

__all__ = [
    "api_handler",
    "ApiApp",
    "worker_handler",
    "run_worker",
    "run_service",
]
