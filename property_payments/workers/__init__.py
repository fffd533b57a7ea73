"""Background workers."""
from .verification_worker import run_verification_pass, start_verification_worker

__all__ = ["run_verification_pass", "start_verification_worker"]
