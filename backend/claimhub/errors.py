"""Error taxonomy shared by the identity, store and device layers."""


class ClaimHubError(Exception):
    code = "claimhub/error"


class NotAuthenticated(ClaimHubError):
    code = "auth/not-authenticated"

    def __init__(self, message: str = "Please login."):
        super().__init__(message)


class InvalidCredentialsShape(ClaimHubError):
    code = "auth/invalid-credentials-shape"

    def __init__(self):
        super().__init__("Either {email,password}, {customToken}, or {idToken,providerId} is required")


class MalformedDeviceId(ClaimHubError):
    code = "device/malformed-id"

    def __init__(self, device_id):
        self.device_id = device_id
        super().__init__("The device id is incorrectly formatted.")


class AlreadyClaimed(ClaimHubError):
    code = "device/already-claimed"

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__("The device has already been claimed.")


class BackendFailure(ClaimHubError):
    """Failure reported by the identity provider or the data store."""
    code = "backend/failure"


class StoreError(BackendFailure):
    code = "store/error"


class PermissionDenied(StoreError):
    code = "store/permission-denied"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Permission denied reading {path}")


class PreconditionFailed(StoreError):
    code = "store/precondition-failed"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Value at {path} changed before the write was applied")


class IdentityError(BackendFailure):
    def __init__(self, code: str, message: str):
        self.code = f"auth/{code}"
        super().__init__(message)
