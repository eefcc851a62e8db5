from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field


class InitializeAccountRequest(BaseModel):
    email: EmailStr
    name: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={"example": {"email": "merchant@example.com", "name": "Jane"}}
    )


class VerifyCodeRequest(BaseModel):
    email: EmailStr
    code: str

    model_config = ConfigDict(
        json_schema_extra={"example": {"email": "merchant@example.com", "code": "123456"}}
    )


class SsoLinkRequest(BaseModel):
    user_id: Optional[int] = Field(None, alias="userId")
    redirect_path: str = Field("dashboard", alias="redirectPath")

    model_config = ConfigDict(populate_by_name=True)


class IssueApiKeyRequest(BaseModel):
    user_id: Optional[int] = Field(None, alias="userId")
    name: str = "Shopify API Key"
    permissions: Optional[List[str]] = None

    model_config = ConfigDict(populate_by_name=True)


class AssignPlanRequest(BaseModel):
    plan_id: int = Field(..., alias="planId")
    plan_name: Optional[str] = Field(None, alias="planName")
    duration_months: int = Field(1, alias="durationMonths")

    model_config = ConfigDict(populate_by_name=True)


class PasswordResetRequest(BaseModel):
    email: EmailStr


class NotificationSettingsRequest(BaseModel):
    notification_channel: Optional[Literal["sms", "whatsapp", "automatic"]] = Field(None, alias="notificationChannel")
    default_sms_mode: Optional[str] = Field(None, alias="defaultSmsMode")
    default_sms_device_id: Optional[str] = Field(None, alias="defaultSmsDeviceId")
    default_sms_sim: Optional[int] = Field(None, alias="defaultSmsSim")
    default_wa_account: Optional[str] = Field(None, alias="defaultWaAccount")
    notify_order_created: Optional[bool] = Field(None, alias="notifyOrderCreated")
    notify_order_shipped: Optional[bool] = Field(None, alias="notifyOrderShipped")
    order_created_template: Optional[str] = Field(None, alias="orderCreatedTemplate")
    order_shipped_template: Optional[str] = Field(None, alias="orderShippedTemplate")

    model_config = ConfigDict(populate_by_name=True)
