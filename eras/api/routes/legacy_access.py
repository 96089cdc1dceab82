"""
Legacy access API endpoints.

Owner endpoints (bearer auth):
- Reading and deleting the legacy access config
- Designating, notifying, re-sending to and removing beneficiaries
- Configuring the inactivity or date trigger
- Recording activity

Public endpoints (the emailed token is the credential):
- Beneficiary verification
- Canceling a scheduled unlock
- Validating an unlock token
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator

from eras.api.middleware.user_auth import AuthenticatedUser, get_current_user
from eras.legacy.beneficiaries import BeneficiaryChange, NewBeneficiary
from eras.legacy.errors import (
    ConcurrentModificationError,
    DuplicateBeneficiaryError,
    ExpiredError,
    ExpiredTokenError,
    InvalidStateError,
    NotFoundError,
    SelfDesignationError,
)
from eras.legacy.models import (
    Beneficiary,
    EpochMillis,
    FolderPermission,
    LegacyAccessConfig,
    NotificationTiming,
)
from eras.legacy.service import LegacyAccessService, get_legacy_access_service
from eras.legacy.unlock import UnlockAccess
from eras.observability.logging import get_logger
from eras.utils.error_sanitizer import sanitize_error_message
from eras.utils.validators import (
    validate_email_address,
    validate_folder_ids,
    validate_name,
    validate_personal_message,
    validate_phone,
)

router = APIRouter(prefix="/api/legacy-access", tags=["legacy-access"])
logger = get_logger(__name__)

INVALID_LINK_MESSAGE = "This link is invalid or has expired."

# Fields that are credentials and never leave the server in owner responses
PRIVATE_BENEFICIARY_FIELDS = ("verificationToken", "unlockTokenId")


# ============================================================================
# Request/Response Models
# ============================================================================


class AddBeneficiaryRequest(BaseModel):
    """API request to designate a beneficiary."""

    name: str
    email: str
    phone: str | None = None
    personal_message: str | None = None
    folder_permissions: dict[str, FolderPermission] = Field(default_factory=dict)
    notification_timing: NotificationTiming = NotificationTiming.DEFERRED

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return validate_name(v)

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return validate_email_address(v)

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v: str | None) -> str | None:
        return validate_phone(v)

    @field_validator("personal_message")
    @classmethod
    def check_message(cls, v: str | None) -> str | None:
        return validate_personal_message(v)

    @field_validator("folder_permissions")
    @classmethod
    def check_folders(cls, v: dict[str, FolderPermission]) -> dict[str, FolderPermission]:
        validate_folder_ids(list(v))
        return v

    def to_new_beneficiary(self) -> NewBeneficiary:
        return NewBeneficiary(**self.model_dump())


class UpdateEmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return validate_email_address(v)


class InactivityTriggerRequest(BaseModel):
    months: int


class DateTriggerRequest(BaseModel):
    unlock_date: EpochMillis


class TokenRequest(BaseModel):
    """Public request carrying an emailed token."""

    token: str = Field(min_length=1, max_length=256)


class ConfigResponse(BaseModel):
    """Owner's config in its stored (camelCase) shape, minus credentials."""

    config: dict[str, Any]
    days_until_unlock: int | None

    @classmethod
    def from_config(cls, config: LegacyAccessConfig, days_until_unlock: int | None) -> ConfigResponse:
        record = config.to_record()
        for beneficiary in record.get("beneficiaries", []):
            for name in PRIVATE_BENEFICIARY_FIELDS:
                beneficiary.pop(name, None)
        record.get("trigger", {}).pop("cancelToken", None)
        return cls(config=record, days_until_unlock=days_until_unlock)


class BeneficiaryResponse(BaseModel):
    beneficiary: dict[str, Any]
    email_sent: bool | None = None

    @classmethod
    def from_beneficiary(cls, beneficiary: Beneficiary, email_sent: bool | None = None) -> BeneficiaryResponse:
        record = beneficiary.to_record()
        for name in PRIVATE_BENEFICIARY_FIELDS:
            record.pop(name, None)
        return cls(beneficiary=record, email_sent=email_sent)

    @classmethod
    def from_change(cls, change: BeneficiaryChange) -> BeneficiaryResponse:
        return cls.from_beneficiary(change.beneficiary, change.email_sent)


class VerifyResponse(BaseModel):
    success: bool
    beneficiary_name: str
    status: str


class CancelUnlockResponse(BaseModel):
    success: bool
    message: str


class UnlockAccessResponse(BaseModel):
    """What the access page needs to render the shared folders."""

    owner_id: str
    beneficiary_id: str
    beneficiary_name: str
    personal_message: str | None
    unlock_type: str
    folder_permissions: dict[str, str]
    first_used_at: datetime | None

    @classmethod
    def from_access(cls, access: UnlockAccess) -> UnlockAccessResponse:
        return cls(
            owner_id=access.owner_id,
            beneficiary_id=access.beneficiary.id,
            beneficiary_name=access.beneficiary.name,
            personal_message=access.personal_message,
            unlock_type=access.unlock_type.value,
            folder_permissions=access.folder_permissions,
            first_used_at=access.first_used_at,
        )


def _owner_error(e: Exception, action: str) -> HTTPException:
    """Map a service exception on an owner endpoint to an HTTP error."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail="Beneficiary not found")
    if isinstance(e, (DuplicateBeneficiaryError, InvalidStateError)):
        return HTTPException(status_code=409, detail=sanitize_error_message(str(e), 409))
    if isinstance(e, ConcurrentModificationError):
        return HTTPException(
            status_code=409,
            detail="Your legacy access settings changed while saving. Please try again.",
        )
    if isinstance(e, (SelfDesignationError, ValueError)):
        return HTTPException(status_code=400, detail=sanitize_error_message(str(e), 400))
    logger.error("Failed to %s: %s", action, e)
    return HTTPException(status_code=500, detail=f"Failed to {action}")


def _owner_service(
    user: AuthenticatedUser = Depends(get_current_user),
    service: LegacyAccessService = Depends(get_legacy_access_service),
) -> LegacyAccessService:
    """Resolve the service and keep the caller's contact details on file."""
    if user.email:
        try:
            service.remember_owner(user.id, user.email, user.name)
        except Exception as e:
            logger.warning("Could not refresh owner profile for %s: %s", user, e)
    return service


# ============================================================================
# Config Endpoints
# ============================================================================


@router.get("/config", response_model=ConfigResponse)
def get_config(
    user: AuthenticatedUser = Depends(get_current_user),
    service: LegacyAccessService = Depends(_owner_service),
) -> ConfigResponse:
    """
    Get the owner's legacy access config, creating the default on first use.

    Includes the number of days until the scheduled unlock when one applies.
    """
    try:
        config = service.get_config(user.id)
        return ConfigResponse.from_config(config, service.days_until_unlock(config))
    except Exception as e:
        raise _owner_error(e, "load legacy access settings") from None


@router.delete("/config")
def delete_config(
    user: AuthenticatedUser = Depends(get_current_user),
    service: LegacyAccessService = Depends(get_legacy_access_service),
) -> dict[str, Any]:
    """Remove the owner's config and every record that hangs off it (account deletion)."""
    try:
        deleted = service.delete_legacy_access_config(user.id)
        logger.info("Deleted legacy access config for %s: %s", user, deleted)
        return {"success": True, "deleted": deleted}
    except Exception as e:
        raise _owner_error(e, "delete legacy access settings") from None


# ============================================================================
# Beneficiary Endpoints
# ============================================================================


@router.post("/beneficiaries", response_model=BeneficiaryResponse, status_code=201)
def add_beneficiary(
    request: AddBeneficiaryRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: LegacyAccessService = Depends(_owner_service),
) -> BeneficiaryResponse:
    """
    Designate a beneficiary.

    With immediate timing the verification email goes out now; deferred
    beneficiaries are only contacted when the unlock fires.
    """
    try:
        change = service.add_beneficiary(user.id, request.to_new_beneficiary(), owner_email=user.email)
        logger.info("Added beneficiary %s for %s", change.beneficiary.id, user)
        return BeneficiaryResponse.from_change(change)
    except Exception as e:
        raise _owner_error(e, "add beneficiary") from None


@router.delete("/beneficiaries/{beneficiary_id}", response_model=BeneficiaryResponse)
def remove_beneficiary(
    beneficiary_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: LegacyAccessService = Depends(_owner_service),
) -> BeneficiaryResponse:
    """Revoke a beneficiary. The record is kept with status revoked."""
    try:
        return BeneficiaryResponse.from_beneficiary(service.remove_beneficiary(user.id, beneficiary_id))
    except Exception as e:
        raise _owner_error(e, "remove beneficiary") from None


@router.post("/beneficiaries/{beneficiary_id}/notify", response_model=BeneficiaryResponse)
def notify_beneficiary(
    beneficiary_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: LegacyAccessService = Depends(_owner_service),
) -> BeneficiaryResponse:
    """Send the verification email to a deferred beneficiary ahead of the unlock."""
    try:
        return BeneficiaryResponse.from_change(service.send_beneficiary_notification(user.id, beneficiary_id))
    except Exception as e:
        raise _owner_error(e, "notify beneficiary") from None


@router.post("/beneficiaries/{beneficiary_id}/resend", response_model=BeneficiaryResponse)
def resend_verification(
    beneficiary_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: LegacyAccessService = Depends(_owner_service),
) -> BeneficiaryResponse:
    try:
        return BeneficiaryResponse.from_change(service.resend_verification_email(user.id, beneficiary_id))
    except Exception as e:
        raise _owner_error(e, "resend verification email") from None


@router.put("/beneficiaries/{beneficiary_id}/email", response_model=BeneficiaryResponse)
def update_beneficiary_email(
    beneficiary_id: str,
    request: UpdateEmailRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: LegacyAccessService = Depends(_owner_service),
) -> BeneficiaryResponse:
    """
    Change a beneficiary's email.

    The old address is kept in the email history and verification starts over.
    """
    try:
        change = service.update_beneficiary_email(
            user.id, beneficiary_id, request.email, owner_email=user.email
        )
        return BeneficiaryResponse.from_change(change)
    except Exception as e:
        raise _owner_error(e, "update beneficiary email") from None


# ============================================================================
# Trigger Endpoints
# ============================================================================


@router.put("/trigger/inactivity", response_model=ConfigResponse)
def update_inactivity_trigger(
    request: InactivityTriggerRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: LegacyAccessService = Depends(_owner_service),
) -> ConfigResponse:
    try:
        config = service.update_inactivity_trigger(user.id, request.months)
        return ConfigResponse.from_config(config, service.days_until_unlock(config))
    except Exception as e:
        raise _owner_error(e, "update trigger") from None


@router.put("/trigger/date", response_model=ConfigResponse)
def update_date_trigger(
    request: DateTriggerRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: LegacyAccessService = Depends(_owner_service),
) -> ConfigResponse:
    try:
        config = service.update_date_trigger(user.id, request.unlock_date)
        return ConfigResponse.from_config(config, service.days_until_unlock(config))
    except Exception as e:
        raise _owner_error(e, "update trigger") from None


@router.post("/activity")
def record_activity(
    user: AuthenticatedUser = Depends(get_current_user),
    service: LegacyAccessService = Depends(_owner_service),
) -> dict[str, Any]:
    """Record that the owner is alive and active. Cancels a pending grace period."""
    try:
        config = service.update_user_activity(user.id)
        return {"success": True, "days_until_unlock": service.days_until_unlock(config)}
    except Exception as e:
        raise _owner_error(e, "record activity") from None


# ============================================================================
# Public Token Endpoints
# ============================================================================


@router.post("/verify", response_model=VerifyResponse)
def verify_beneficiary(
    request: TokenRequest,
    service: LegacyAccessService = Depends(get_legacy_access_service),
) -> VerifyResponse:
    """Confirm a beneficiary's email using the token from their verification email."""
    try:
        beneficiary = service.verify_beneficiary(request.token)
    except (NotFoundError, ExpiredTokenError):
        raise HTTPException(status_code=400, detail=INVALID_LINK_MESSAGE) from None
    except ConcurrentModificationError:
        raise HTTPException(status_code=409, detail="Please try again.") from None
    except Exception as e:
        logger.error("Failed to verify beneficiary: %s", e)
        raise HTTPException(status_code=500, detail="Failed to verify beneficiary") from None

    return VerifyResponse(success=True, beneficiary_name=beneficiary.name, status=beneficiary.status.value)


@router.post("/cancel-unlock", response_model=CancelUnlockResponse)
def cancel_unlock(
    request: TokenRequest,
    service: LegacyAccessService = Depends(get_legacy_access_service),
) -> CancelUnlockResponse:
    """Cancel a scheduled unlock from the link in the inactivity warning email."""
    try:
        service.cancel_scheduled_unlock(request.token)
    except NotFoundError:
        raise HTTPException(status_code=400, detail=INVALID_LINK_MESSAGE) from None
    except ConcurrentModificationError:
        raise HTTPException(status_code=409, detail="Please try again.") from None
    except Exception as e:
        logger.error("Failed to cancel scheduled unlock: %s", e)
        raise HTTPException(status_code=500, detail="Failed to cancel scheduled unlock") from None

    return CancelUnlockResponse(success=True, message="The scheduled unlock has been canceled.")


@router.post("/unlock/validate", response_model=UnlockAccessResponse)
def validate_unlock_token(
    request: TokenRequest,
    service: LegacyAccessService = Depends(get_legacy_access_service),
) -> UnlockAccessResponse:
    """Check an unlock token and return the access it grants."""
    try:
        access = service.validate_unlock_token(request.token)
    except (NotFoundError, ExpiredError):
        raise HTTPException(status_code=400, detail=INVALID_LINK_MESSAGE) from None
    except Exception as e:
        logger.error("Failed to validate unlock token: %s", e)
        raise HTTPException(status_code=500, detail="Failed to validate access") from None

    return UnlockAccessResponse.from_access(access)
