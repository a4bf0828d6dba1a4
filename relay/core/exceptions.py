class RelayException(Exception):
    """Base exception for all Relay errors"""
    pass


class ConfigurationError(RelayException):
    """Configuration-related errors"""
    pass


class ContractViolation(RelayException):
    """Model output broke the tool-call contract (duplicate or unmatched ids)"""
    pass


# Provider errors

class ProviderError(RelayException):
    """Model-call capability failure"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Provider failure that may succeed when retried"""
    pass


class FatalProviderError(ProviderError):
    """Provider failure that retrying cannot fix"""
    pass


# Tool errors

class ToolError(RelayException):
    """Base class for errors converted into error tool results"""
    pass


class ToolNotFound(ToolError):
    """No capability registered under the requested name"""
    pass


class ToolArgumentError(ToolError):
    """Arguments failed schema validation"""
    pass


class ToolExecutionError(ToolError):
    """Capability raised while executing"""
    pass


class ToolTimeout(ToolExecutionError):
    """Capability did not return within its timeout"""
    pass


# Loop-fatal errors

class ContextBudgetExceeded(RelayException):
    """Assembled context cannot fit the configured budget"""
    pass


class MaxTurnsExceeded(RelayException):
    """Loop used more turns than allowed"""
    pass


class Cancelled(RelayException):
    """Execution was cancelled before completion"""
    pass


# Subagent errors

class SubagentError(ToolError):
    """Base class for delegation failures"""
    retryable = False


class SubagentDepthExceeded(SubagentError):
    """Spawn requested at or beyond the maximum nesting depth"""
    pass


class SubagentCapacityExceeded(SubagentError):
    """Too many subagents running; try again later"""
    retryable = True


class SubagentNotFound(SubagentError):
    """No tracked subagent with the given id"""
    pass
