"""
HTTP client for the MarketHub API.

Used by scripts and client code; pairs with EntitlementPoller for the
scheduled entitlement refresh.
"""
from typing import Any, Dict, Optional

import httpx

from markethub.core.errors import (
    AppError,
    AuthenticationRequiredError,
    ExternalServiceError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from markethub.features.entitlements.poller import EntitlementPoller
from markethub.models.usage import CouponResult, EntitlementState


ERRORS_BY_CODE = {
    QuotaExceededError.code: QuotaExceededError,
    AuthenticationRequiredError.code: AuthenticationRequiredError,
    ExternalServiceError.code: ExternalServiceError,
    ValidationError.code: ValidationError,
    NotFoundError.code: NotFoundError,
}


class MarketHubClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        timeout: float = 90.0,
        http_client: Optional[httpx.Client] = None,
    ):
        headers: Dict[str, str] = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        elif user_id:
            # Header identity is only honoured outside production
            headers["X-User-Id"] = user_id
            if email:
                headers["X-User-Email"] = email
        self._headers = headers
        self._client = http_client or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "MarketHubClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self._client.request(method, path, json=json, headers=self._headers)
        if response.status_code >= 400:
            try:
                error = response.json().get("error") or {}
            except ValueError:
                error = {}
            error_cls = ERRORS_BY_CODE.get(error.get("code"), AppError)
            raise error_cls(
                error.get("message") or f"HTTP {response.status_code}",
                code=error.get("code"),
                status_code=response.status_code,
                request_id=error.get("request_id") or response.headers.get("x-request-id"),
                details=error.get("details"),
            )
        return response.json()

    def fetch_entitlement(self) -> EntitlementState:
        return EntitlementState.model_validate(self._request("GET", "/api/usage/entitlement"))

    def quota(self, category: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/usage/quota/{category}")

    def apply_coupon(self, code: str) -> CouponResult:
        return CouponResult.model_validate(self._request("POST", "/api/usage/coupon", {"coupon_code": code}))

    def create_product(self, name: str, description: Optional[str] = None, image_url: Optional[str] = None) -> Dict[str, Any]:
        return self._request(
            "POST", "/api/products", {"name": name, "description": description, "imageUrl": image_url}
        )

    def generate_image(self, prompt: str, image_url: Optional[str] = None) -> str:
        data = self._request("POST", "/api/generate/image", {"prompt": prompt, "imageUrl": image_url})
        return data["imageUrl"]

    def generate_copy(self, product_name: str, product_description: str, **options: Any) -> str:
        payload = {"productName": product_name, "productDescription": product_description}
        payload.update(options)
        return self._request("POST", "/api/generate/copy", payload)["content"]

    def generate_content_marketing(self, product_description: str, platform: str, **options: Any) -> str:
        payload = {"productDescription": product_description, "platform": platform}
        payload.update(options)
        return self._request("POST", "/api/generate/content-marketing", payload)["content"]

    def poller(self, interval_seconds: Optional[float] = None) -> EntitlementPoller:
        """Scheduled entitlement refresh backed by this client."""
        return EntitlementPoller(self.fetch_entitlement, interval_seconds=interval_seconds)
