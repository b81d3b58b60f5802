from typing import Optional
import logging

logger = logging.getLogger(__name__)

class AppError(Exception):
    def __init__(self, message: str, status_code: int = 500, user_message: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.user_message = user_message or "An error occurred. Please try again later."
        super().__init__(self.message)

class PersistenceError(AppError):
    """Store unavailable or a constraint was violated"""

class EventParseError(AppError):
    """Inbound webhook payload is missing required fields"""
    def __init__(self, message: str):
        super().__init__(message, status_code=400)

class ProviderError(AppError):
    """An OpenAI or Twilio call failed"""
    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message, status_code=502)
        self.reason = reason or message

class ErrorHandler:
    @staticmethod
    def handle_analysis_error(error: Exception) -> None:
        logger.warning(f"Message analysis failed, using neutral analysis: {str(error)}")

    @staticmethod
    def handle_generation_error(error: Exception) -> None:
        logger.warning(f"Response generation failed, using fallback reply: {str(error)}")

    @staticmethod
    def handle_context_error(error: Exception) -> None:
        logger.warning(f"User context update failed: {str(error)}")

    @staticmethod
    def handle_dispatch_error(to: str, error: str) -> None:
        logger.error(f"Dispatch to {to} failed: {error}")
