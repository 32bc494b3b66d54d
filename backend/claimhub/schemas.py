from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError
from typing import Any, List, Mapping, Union

from .errors import InvalidCredentialsShape

class PasswordCredentials(BaseModel):
    email: str
    password: str

class CustomTokenCredentials(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    custom_token: str = Field(alias="customToken")

class ProviderCredentials(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    id_token: str = Field(alias="idToken")
    provider_id: str = Field(alias="providerId")

Credentials = Union[PasswordCredentials, CustomTokenCredentials, ProviderCredentials]

def _has(data: Mapping[str, Any], *names: str) -> bool:
    return any(name in data for name in names)

def parse_credentials(credentials: Any) -> Credentials:
    """Pick the credential shape, checking custom token, provider token and
    email/password in that order."""
    if isinstance(credentials, (PasswordCredentials, CustomTokenCredentials, ProviderCredentials)):
        return credentials
    if not isinstance(credentials, Mapping):
        raise InvalidCredentialsShape()
    try:
        if _has(credentials, "customToken", "custom_token"):
            return CustomTokenCredentials.model_validate(credentials)
        if _has(credentials, "idToken", "id_token") and _has(credentials, "providerId", "provider_id"):
            return ProviderCredentials.model_validate(credentials)
        if _has(credentials, "email") and _has(credentials, "password"):
            return PasswordCredentials.model_validate(credentials)
    except ValidationError as exc:
        raise InvalidCredentialsShape() from exc
    raise InvalidCredentialsShape()

class AccountIn(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6, max_length=72)

class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    uid: str

class CustomTokenOut(BaseModel):
    custom_token: str

class DeviceInfo(BaseModel):
    """Public description of a device; fields beyond ``deviceId`` are kept as sent."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)
    device_id: str = Field(alias="deviceId")

class DeviceListOut(BaseModel):
    devices: List[DeviceInfo]

class PermissionOut(BaseModel):
    device_id: str
    has_permission: bool

class ClaimOut(BaseModel):
    status: str
    device_id: str
