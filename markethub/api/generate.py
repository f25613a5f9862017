"""
Metered action routes.

- POST /api/products: create a product (products)
- POST /api/generate/image: generate or refine a product image (images)
- POST /api/generate/copy: generate sales copy (copies)
- POST /api/generate/content-marketing: generate platform content (content_marketing)

A denied quota surfaces as HTTP 403 with error code quota_exceeded and the
increment outcome in error.details.
"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from markethub.core.auth import AuthenticatedUser, get_current_user
from markethub.features.generation import service as generation


router = APIRouter(tags=["generate"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProductRequest(_CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = Field(None, alias="imageUrl")


class ProductResponse(BaseModel):
    id: str
    user_id: str
    name: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime


class ImageRequest(_CamelModel):
    prompt: Optional[str] = None
    image_url: Optional[str] = Field(None, alias="imageUrl")


class ImageResponse(BaseModel):
    imageUrl: str


class CopyRequest(_CamelModel):
    product_name: Optional[str] = Field(None, alias="productName")
    product_description: Optional[str] = Field(None, alias="productDescription")
    mode: str = "guided"
    copywriter: Optional[str] = None
    target_audience: Optional[str] = Field(None, alias="targetAudience")
    unique_value: Optional[str] = Field(None, alias="uniqueValue")


class ContentMarketingRequest(_CamelModel):
    product_description: Optional[str] = Field(None, alias="productDescription")
    platform: Optional[str] = None
    target_audience: Optional[str] = Field(None, alias="targetAudience")
    content_goal: Optional[str] = Field(None, alias="contentGoal")


class ContentResponse(BaseModel):
    content: str


@router.post("/api/products", response_model=ProductResponse, status_code=201)
def create_product(request: ProductRequest, user: AuthenticatedUser = Depends(get_current_user)):
    return generation.create_product(
        user.user_id,
        request.name,
        description=request.description,
        image_url=request.image_url,
    )


@router.post("/api/generate/image", response_model=ImageResponse)
def generate_image(request: ImageRequest, user: AuthenticatedUser = Depends(get_current_user)):
    url = generation.generate_image(user.user_id, request.prompt, image_url=request.image_url)
    return {"imageUrl": url}


@router.post("/api/generate/copy", response_model=ContentResponse)
def generate_copy(request: CopyRequest, user: AuthenticatedUser = Depends(get_current_user)):
    content = generation.generate_copy(
        user.user_id,
        request.product_name,
        request.product_description,
        mode=request.mode,
        copywriter=request.copywriter,
        target_audience=request.target_audience,
        unique_value=request.unique_value,
    )
    return {"content": content}


@router.post("/api/generate/content-marketing", response_model=ContentResponse)
def generate_content_marketing(
    request: ContentMarketingRequest,
    user: AuthenticatedUser = Depends(get_current_user),
):
    content = generation.generate_content_marketing(
        user.user_id,
        request.product_description,
        request.platform,
        target_audience=request.target_audience,
        content_goal=request.content_goal,
    )
    return {"content": content}
