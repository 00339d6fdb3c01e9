"""Deployer error types.

Every error carries a stable code and the HTTP status the API maps it to,
so route handlers can report failures without inspecting messages.
"""


class DeployerError(Exception):
    """Base exception for deployment errors."""

    def __init__(self, code: str, message: str, http_status: int = 500):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(f"{code}: {message}")


class NoDeploymentError(DeployerError):
    """No project has been deployed on this daemon."""

    def __init__(self):
        super().__init__(
            "E400",
            "No deployment is currently active on this remote - try running 'inertia $REMOTE up'",
            412,
        )


class DeploymentBusyError(DeployerError):
    """Another mutating operation is in progress."""

    def __init__(self, operation: str):
        super().__init__(
            "E401",
            f"Deployment busy: cannot {operation} while another operation is in progress",
            409,
        )


class InvalidStateError(DeployerError):
    """Operation is not valid in the deployment's current state."""

    def __init__(self, operation: str, state: str, hint: str = ""):
        message = f"Cannot {operation} while deployment is {state}"
        if hint:
            message = f"{message} - {hint}"
        super().__init__("E402", message, 409)


class RemoteMismatchError(DeployerError):
    """Supplied remote does not refer to the tracked repository."""

    def __init__(self, tracked: str, other: str):
        super().__init__(
            "E403",
            f"Remote mismatch: tracking {tracked}, got {other}",
            400,
        )


class EngineError(DeployerError):
    """Container engine call failed."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__("E501", f"{operation} failed: {message}", 502)


class GitError(DeployerError):
    """Git command failed."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__("E502", f"git {operation} failed: {message}", 502)


class InvalidOptionsError(DeployerError):
    """Deploy/log options are missing or malformed."""

    def __init__(self, message: str):
        super().__init__("E100", message, 400)


class ContainerNotFoundError(DeployerError):
    """Requested container does not belong to the deployment."""

    def __init__(self, name: str):
        super().__init__("E404", f"Container not found: {name}", 404)
