from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Wire(BaseModel):
    # Accept both our snake_case names and the browser's camelCase toJSON() output.
    model_config = ConfigDict(populate_by_name=True)


# ---------- Client -> server ----------
class AttestationResponse(_Wire):
    client_data_json: str = Field(alias="clientDataJSON")
    attestation_object: str = Field(alias="attestationObject")


class AssertionResponse(_Wire):
    client_data_json: str = Field(alias="clientDataJSON")
    authenticator_data: str = Field(alias="authenticatorData")
    signature: str
    user_handle: Optional[str] = Field(default=None, alias="userHandle")


class RegistrationCredential(_Wire):
    id: str
    raw_id: str = Field(alias="rawId")
    type: str
    response: AttestationResponse


class AuthenticationCredential(_Wire):
    id: str
    raw_id: str = Field(alias="rawId")
    type: str
    response: AssertionResponse


class RegisterBeginRequest(BaseModel):
    username: str
    email: str


class RegisterCompleteRequest(BaseModel):
    user_id: str
    credential: RegistrationCredential


class LoginBeginRequest(BaseModel):
    username: str


class LoginCompleteRequest(BaseModel):
    username: str
    credential: AuthenticationCredential


# ---------- Server -> client ----------
class RelyingPartyEntity(BaseModel):
    id: str
    name: str


class UserEntity(BaseModel):
    id: str
    name: str
    display_name: str


class PubKeyCredParam(BaseModel):
    alg: int
    type: str = "public-key"


class AuthenticatorSelection(BaseModel):
    authenticator_attachment: Optional[str] = None
    require_resident_key: bool = False
    resident_key: str = "preferred"
    user_verification: str = "preferred"


class RegistrationOptions(BaseModel):
    challenge: str
    user_id: str
    timeout: int
    rp: RelyingPartyEntity
    user: UserEntity
    pub_key_cred_params: List[PubKeyCredParam]
    authenticator_selection: AuthenticatorSelection
    attestation: str = "none"


class AllowedCredential(BaseModel):
    id: str
    type: str = "public-key"
    transports: Optional[List[str]] = None


class LoginOptions(BaseModel):
    challenge: str
    timeout: int
    rp_id: str
    allow_credentials: List[AllowedCredential]
    user_verification: str = "preferred"


class CeremonyCompleteResponse(BaseModel):
    user_id: int
    username: str
    email: str
    token: str


class MeResponse(BaseModel):
    user_id: int
    username: str
    email: str
    signature_counter: int


class ModeStatusResponse(BaseModel):
    test_mode: bool
