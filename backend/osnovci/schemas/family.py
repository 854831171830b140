from pydantic import BaseModel, Field, field_validator

from osnovci.core.permissions import LinkPermission, Relation


class InitiateLinkIn(BaseModel):
    qr_data: str = Field(min_length=1, max_length=128)
    relation: Relation = "OTHER"
    permissions: list[LinkPermission] | None = None


class VerifyLinkIn(BaseModel):
    link_code: str = Field(min_length=4, max_length=16)
    code: str = Field(min_length=4, max_length=16)

    @field_validator("link_code", "code")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper()


class UpdatePermissionsIn(BaseModel):
    permissions: list[LinkPermission] = Field(min_length=1)


class SetPinIn(BaseModel):
    pin: str = Field(pattern=r"^\d{4,6}$")


class VerifyPinIn(BaseModel):
    pin: str = Field(min_length=1, max_length=6)
    action: str | None = Field(default=None, max_length=64)
