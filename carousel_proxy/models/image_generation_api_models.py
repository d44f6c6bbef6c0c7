from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Any, Dict


class SlideSpec(BaseModel):
    slide_number: int = Field(..., alias="slideNumber", ge=1, description="1-based position in the carousel.")
    title: Optional[str] = Field(None, description="Headline shown on the slide.")
    subtitle: Optional[str] = None
    body: Optional[str] = None
    visual_description: Optional[str] = Field(None, alias="visualDescription", description="Visual hint for the image prompt.")
    # 直接给定的图像提示词优先于由视觉提示拼接的提示词
    prompt: Optional[str] = Field(None, description="Explicit image prompt for this slide.")
    model_config = {"populate_by_name": True, "extra": "allow"}

    def hints(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ImageGenerationRequest(BaseModel):
    prompt: Optional[str] = Field(None, description="A text description of the desired image.")
    negative_prompt: Optional[str] = Field(None, alias="negativePrompt", description="What the image must avoid.")
    api_key: Optional[str] = Field(None, alias="apiKey", description="Google AI API key; falls back to GOOGLE_API_KEY.")
    slides: Optional[List[SlideSpec]] = Field(None, description="Carousel slides; one image is generated per slide.")
    slide_count: Optional[int] = Field(None, alias="slideCount", ge=1, description="Number of images to generate from `prompt`.")
    brand_kit: Optional[Dict[str, Any]] = Field(None, alias="brandKit", description="Client brand kit used to enrich slide prompts.")
    model_config = {"populate_by_name": True}

    @field_validator("prompt", "negative_prompt", "api_key", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @property
    def is_batch(self) -> bool:
        return bool(self.slides) or (self.slide_count is not None and self.slide_count > 1)


class ImageGenerationResponse(BaseModel):
    image: str
    model_used: Optional[str] = Field(None, alias="modelUsed")
    model_config = {"populate_by_name": True}


class SlideImage(BaseModel):
    slide_number: int = Field(..., alias="slideNumber")
    model_used: Optional[str] = Field(None, alias="modelUsed")
    image_base64: Optional[str] = Field(None, alias="imageBase64")
    file_uri: Optional[str] = Field(None, alias="fileUri")
    error: Optional[Dict[str, Any]] = None
    model_config = {"populate_by_name": True}


class FallbackInfo(BaseModel):
    used: bool
    steps: List[Dict[str, Any]] = Field(default_factory=list)


class CarouselImagesResponse(BaseModel):
    images: List[SlideImage]
    fallback: FallbackInfo


class ErrorInfo(BaseModel):
    message: str
    details: Optional[Any] = None
    retry_after_seconds: Optional[float] = Field(None, alias="retryAfterSeconds")
    model_config = {"populate_by_name": True}


class ErrorResponse(BaseModel):
    error: ErrorInfo
    exemplo: Optional[str] = None
