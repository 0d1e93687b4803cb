from typing import Optional


class ControlPlaneError(Exception):
    """
    Base class of every error the control plane reports to callers.
    `kind` is the stable name rendered as {"error": kind}, `status_code` the HTTP status.
    """
    kind = "Internal"
    status_code = 500

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.detail}


class InvalidSpec(ControlPlaneError):
    kind = "InvalidSpec"
    status_code = 400


class UnsupportedOS(InvalidSpec):
    kind = "UnsupportedOS"


class AuthRequired(ControlPlaneError):
    kind = "AuthRequired"
    status_code = 401


class NotFound(ControlPlaneError):
    kind = "NotFound"
    status_code = 404


class Conflict(ControlPlaneError):
    kind = "Conflict"
    status_code = 409


class DuplicateIp(Conflict):
    pass


class DuplicateName(Conflict):
    pass


class EdgeConflict(Conflict):
    pass


class NoCapacity(ControlPlaneError):
    kind = "NoCapacity"
    status_code = 502


class HypervisorUnavailable(ControlPlaneError):
    kind = "HypervisorUnavailable"
    status_code = 502


# Name used by the placement contract
Unreachable = HypervisorUnavailable


class GuestUnreachable(ControlPlaneError):
    kind = "GuestUnreachable"
    status_code = 502


class CredentialsInstallFailed(ControlPlaneError):
    kind = "CredentialsInstallFailed"
    status_code = 502


class BootstrapFailed(ControlPlaneError):
    kind = "BootstrapFailed"
    status_code = 502

    def __init__(self, command_index: int, detail: str = ""):
        super().__init__(detail or f"Bootstrap command {command_index} failed")
        self.command_index = command_index

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["commandIndex"] = self.command_index
        return data


class EdgeUnavailable(ControlPlaneError):
    kind = "EdgeUnavailable"
    status_code = 502


EdgeUnreachable = EdgeUnavailable


class Timeout(ControlPlaneError):
    kind = "Timeout"
    status_code = 502


class Cancelled(ControlPlaneError):
    kind = "Cancelled"
    status_code = 502


class Internal(ControlPlaneError):
    kind = "Internal"
    status_code = 500


class DeploymentInternal(Internal):
    """Unexpected failure inside a deployment. The cause goes to the log and the audit row only."""
    status_code = 502

    def __init__(self, detail: str = "Deployment failed unexpectedly"):
        super().__init__(detail)


def wrap(error: BaseException, default: type = Internal, detail: Optional[str] = None) -> ControlPlaneError:
    """Returns `error` unchanged if it already belongs to the taxonomy, otherwise wraps it."""
    if isinstance(error, ControlPlaneError):
        return error
    return default(detail or f"{type(error).__name__}: {error}")
