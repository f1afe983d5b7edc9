"""Domain errors raised by asset services and surfaced unchanged by the API."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from fastapi import HTTPException


class AssetServiceError(HTTPException):
    """Base error carrying a machine-readable code alongside the message."""

    status_code = 400
    error = "asset_error"

    def __init__(self, message: str, **extra: Any):
        detail: Dict[str, Any] = {"error": self.error, "message": message}
        detail.update(extra)
        super().__init__(status_code=self.status_code, detail=detail)
        self.message = message


class AssetNotFound(AssetServiceError):
    status_code = 404
    error = "asset_not_found"

    def __init__(self, asset_id: Any):
        super().__init__(f"Asset {asset_id} not found", asset_id=asset_id)


class InvalidAssetTransition(AssetServiceError):
    status_code = 409
    error = "invalid_transition"

    def __init__(self, action: str, status: Optional[str]):
        super().__init__(
            f"Cannot {action} an asset in status '{status}'",
            action=action,
            status=status,
        )


class AssetValidationError(AssetServiceError):
    status_code = 422
    error = "validation_error"


class ReferenceNotFound(AssetServiceError):
    status_code = 404
    error = "reference_not_found"


class ReferenceNotApproved(AssetServiceError):
    status_code = 400
    error = "reference_not_approved"

    def __init__(self, asset_id: Any, status: Optional[str]):
        super().__init__(
            f"Reference asset {asset_id} must be approved (status is '{status}')",
            asset_id=asset_id,
        )


class DependencyNotMet(AssetServiceError):
    status_code = 400
    error = "dependency_not_met"

    def __init__(self, message: str, missing: Iterable[str]):
        super().__init__(message, missing=list(missing))
        self.missing = list(missing)


class PromptTemplateMissing(AssetServiceError):
    status_code = 400
    error = "prompt_template_missing"

    def __init__(self, category: str, asset_key: str):
        super().__init__(
            f"No active prompt template for {category}/{asset_key}. Add one before generating.",
            category=category,
            asset_key=asset_key,
        )


class OriginalNotFound(AssetServiceError):
    status_code = 404
    error = "original_not_found"

    def __init__(self, key: Optional[str]):
        super().__init__(f"Original image not found in private storage: {key}", key=key)


class RemoteServiceError(Exception):
    """Non-success response (or transport failure) from a remote image service."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None, body: str = ""):
        self.service = service
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    @classmethod
    def from_response(cls, service: str, status_code: int, body: str) -> "RemoteServiceError":
        return cls(service, f"{service} failed ({status_code}): {body}", status_code=status_code, body=body)
