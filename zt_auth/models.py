from typing import Optional

from pydantic import AliasChoices, BaseModel, Field

# Fields default to empty so that missing input reaches the engine and is
# reported as bad_request (400) instead of a framework 422.


class AuthenticateRequest(BaseModel):
    # IoT terminals in the field still post {rfid, password}
    identity_token: str = Field("", validation_alias=AliasChoices("identityToken", "rfid"))
    pin: str = Field("", validation_alias=AliasChoices("pin", "password"))


class VerifyOwnershipRequest(BaseModel):
    address: str = ""
    signature: str = ""
    id_hash: Optional[str] = Field(None, validation_alias=AliasChoices("idHash", "id_hash"))
