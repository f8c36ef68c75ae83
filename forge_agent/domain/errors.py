from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors"""


class ModelProviderError(PipelineError):
    """Completion provider returned a non-2xx response or failed in transport"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class VaultConfigurationError(PipelineError):
    """Vault encryption key is missing or malformed"""


class VaultDecryptionError(PipelineError):
    """Ciphertext failed authentication or could not be decoded"""


class WriteForbiddenError(PipelineError):
    """A write was attempted while the run forbids writes"""


class ToolValidationError(PipelineError):
    """Tool arguments did not match the declared parameter schema"""


class ToolExecutionError(PipelineError):
    """A tool was requested that is unknown or failed while running"""
