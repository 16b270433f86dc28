
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

# Field formats are enforced by mydata_ca.fields before a model is built;
# the models only give handlers typed access to an already-valid payload.
LENIENT = ConfigDict(coerce_numbers_to_str=True, extra="ignore")


class TokenRequest(BaseModel):
    model_config = LENIENT

    grant_type: str = ""
    client_id: str = ""
    client_secret: str = ""
    scope: str = ""


class ConsentItemIn(BaseModel):
    model_config = LENIENT

    tx_id: Optional[str] = None
    consent_title: str
    consent: str
    consent_len: int


class SignRequest(BaseModel):
    model_config = LENIENT

    sign_tx_id: str
    user_ci: str
    real_name: str
    phone_num: str
    request_title: str
    device_code: str
    device_browser: str
    return_app_scheme_url: str
    consent_type: str
    consent_cnt: int
    consent_list: List[ConsentItemIn] = Field(default_factory=list)


class SignResultRequest(BaseModel):
    model_config = LENIENT

    cert_tx_id: str
    sign_tx_id: str


class SignVerificationRequest(BaseModel):
    model_config = LENIENT

    cert_tx_id: str
    tx_id: str
    signed_consent: str
    signed_consent_len: int
    consent: str
    consent_type: str
    consent_len: int


class DataAccessRequest(BaseModel):
    model_config = LENIENT

    tx_id: str


class RevokeRequest(BaseModel):
    model_config = LENIENT

    token: str

