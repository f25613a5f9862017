"""
markethub/features/generation/service.py

Metered actions.

Every action consumes one unit through check_and_increment before doing any
work; a denied increment raises QuotaExceededError and nothing else happens.
Input validation runs first so a malformed request never consumes quota.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import insert, select

from markethub.core.database import get_db_session, products
from markethub.core.errors import QuotaExceededError, ValidationError
from markethub.features.generation.gateway import AIGateway
from markethub.features.usage.periods import as_utc
from markethub.features.usage.service import check_and_increment
from markethub.models.usage import Category, IncrementResult


COPY_MODES = ("guided", "expert", "kenny")
CONTENT_PLATFORMS = ("whatsapp", "instagram", "tiktok")


def _require(value: Optional[str], field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required", details={"field": field})
    return text


def _quota_error(result: IncrementResult) -> QuotaExceededError:
    return QuotaExceededError(
        f"You've reached your {result.category.value.replace('_', ' ')} limit for this period",
        details=result.model_dump(mode="json"),
    )


def consume(user_id: str, category: Category, now: Optional[datetime] = None) -> IncrementResult:
    """Consume one unit or raise QuotaExceededError."""
    result = check_and_increment(user_id, category, now=now)
    if not result.allowed:
        raise _quota_error(result)
    return result


def create_product(
    user_id: str,
    name: Optional[str],
    description: Optional[str] = None,
    image_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Create a product row (metered as `products`)."""
    product_name = _require(name, "name")
    consume(user_id, Category.PRODUCTS, now=now)

    product_id = str(uuid4())
    with get_db_session() as session:
        session.execute(
            insert(products).values(
                id=product_id,
                user_id=user_id,
                name=product_name,
                description=(description or "").strip() or None,
                image_url=image_url,
                created_at=as_utc(now),
            )
        )
        row = session.execute(select(products).where(products.c.id == product_id)).first()

    return {
        "id": row.id,
        "user_id": row.user_id,
        "name": row.name,
        "description": row.description,
        "image_url": row.image_url,
        "created_at": as_utc(row.created_at),
    }


def generate_image(
    user_id: str,
    prompt: Optional[str],
    image_url: Optional[str] = None,
    gateway: Optional[AIGateway] = None,
    now: Optional[datetime] = None,
) -> str:
    """Generate (or refine, with image_url) a product image; returns its URL."""
    text = _require(prompt, "prompt")
    consume(user_id, Category.IMAGES, now=now)
    return (gateway or AIGateway()).generate_image(text, image_url=image_url)


def _copy_prompts(
    product_name: str,
    product_description: str,
    mode: str,
    copywriter: Optional[str],
    target_audience: Optional[str],
    unique_value: Optional[str],
):
    details = [f"Product: {product_name}", f"Description: {product_description}"]
    if target_audience:
        details.append(f"Target Audience: {target_audience}")
    if unique_value:
        details.append(f"Unique Value: {unique_value}")
    context = "\n".join(details)

    if mode == "kenny":
        system = "You are a persuasive, conversational direct-response copywriter."
        user = f"Write an energetic, high-converting sales copy with a clear call to action.\n\n{context}"
    elif mode == "expert" and copywriter:
        system = f"You are an expert copywriter emulating the style of {copywriter}."
        user = f"In the style of {copywriter}, write headlines, a sales letter and short ad copy.\n\n{context}"
    else:
        system = "You are an expert marketing copywriter using proven frameworks."
        user = f"Write ad copy variations using AIDA, PAS, storytelling, direct offer and scarcity.\n\n{context}"
    return system, user


def generate_copy(
    user_id: str,
    product_name: Optional[str],
    product_description: Optional[str],
    mode: str = "guided",
    copywriter: Optional[str] = None,
    target_audience: Optional[str] = None,
    unique_value: Optional[str] = None,
    gateway: Optional[AIGateway] = None,
    now: Optional[datetime] = None,
) -> str:
    """Generate sales copy for a product (metered as `copies`)."""
    name = _require(product_name, "productName")
    description = _require(product_description, "productDescription")
    if mode not in COPY_MODES:
        raise ValidationError(f"Unknown copy mode: {mode}", details={"allowed": ", ".join(COPY_MODES)})

    consume(user_id, Category.COPIES, now=now)
    system, user = _copy_prompts(name, description, mode, copywriter, target_audience, unique_value)
    return (gateway or AIGateway()).complete(system, user)


def generate_content_marketing(
    user_id: str,
    product_description: Optional[str],
    platform: Optional[str],
    target_audience: Optional[str] = None,
    content_goal: Optional[str] = None,
    gateway: Optional[AIGateway] = None,
    now: Optional[datetime] = None,
) -> str:
    """Generate a platform content package (metered as `content_marketing`)."""
    description = _require(product_description, "productDescription")
    channel = _require(platform, "platform").lower()
    if channel not in CONTENT_PLATFORMS:
        raise ValidationError(
            f"Unsupported platform: {channel}",
            details={"allowed": ", ".join(CONTENT_PLATFORMS)},
        )

    consume(user_id, Category.CONTENT_MARKETING, now=now)
    lines = [f"Product/Service: {description}"]
    if target_audience:
        lines.append(f"Target Audience: {target_audience}")
    if content_goal:
        lines.append(f"Content Goal: {content_goal}")
    system = f"You are an expert {channel} marketing strategist."
    user = f"Create a ready-to-use {channel} content package.\n\n" + "\n".join(lines)
    return (gateway or AIGateway()).complete(system, user)
