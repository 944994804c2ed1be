"""Custom exceptions for Nexus."""


class NexusError(Exception):
    """Base exception for Nexus."""

    pass


class ConfigurationError(NexusError):
    """Configuration-related errors."""

    pass


class MissingCredentialError(ConfigurationError):
    """The API credential is not configured."""

    def __init__(self, env_var: str):
        super().__init__(
            f"API key is not configured. Set {env_var} or model.api_key in config.yaml."
        )
        self.env_var = env_var


class InvalidModelError(ConfigurationError):
    """Model id is not in the allow-list."""

    def __init__(self, model_id: str, allowed: list[str]):
        super().__init__(
            f"Unsupported model: {model_id} (allowed: {', '.join(allowed) or 'none'})"
        )
        self.model_id = model_id
        self.allowed = allowed


class UnknownMachineError(ConfigurationError):
    """Machine name is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Unknown machine: {name}")
        self.name = name


class LLMError(NexusError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, transport, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StreamError(LLMError):
    """The streamed response could not be read."""

    pass


class StateLockError(NexusError):
    """Shared state lock could not be acquired."""

    def __init__(self, state_name: str, timeout: float):
        super().__init__(f"Timed out after {timeout:g}s waiting for {state_name} lock")
        self.state_name = state_name
        self.timeout = timeout
