"""Mode-specific generation parameters and the queue job descriptor.

Parameters are a tagged variant (``ImageParams`` | ``VideoParams``) at the domain
boundary. They are flattened onto ``Generation`` rows only at the storage edge
and onto provider request bodies only at the wire edge.
"""

from typing import Annotated, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from genmedia.models.generation import Generation, GenerationMode

ASPECT_RATIOS = ("1:1", "16:9", "9:16", "4:3", "3:4")
VIDEO_RESOLUTIONS = ("480p", "720p")
VIDEO_DURATIONS = (4, 8, 12)
MAX_INPUT_IMAGES = 2

AspectRatio = Literal["1:1", "16:9", "9:16", "4:3", "3:4"]
Resolution = Literal["480p", "720p"]


class ImageParams(BaseModel):
    """Image mode uses a fixed minimal parameter set."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["image"] = "image"
    aspect_ratio: Optional[AspectRatio] = None

    def with_defaults(self) -> "ImageParams":
        return self.model_copy(update={"aspect_ratio": self.aspect_ratio or "1:1"})


class VideoParams(BaseModel):
    """Video mode parameters. Unset fields are omitted from provider requests."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["video"] = "video"
    input_image_urls: tuple[str, ...] = Field(default=(), max_length=MAX_INPUT_IMAGES)
    aspect_ratio: Optional[AspectRatio] = None
    resolution: Optional[Resolution] = None
    duration: Optional[Literal[4, 8, 12]] = None
    fixed_lens: Optional[bool] = None
    generate_audio: Optional[bool] = None

    def with_defaults(self) -> "VideoParams":
        return self.model_copy(
            update={
                "aspect_ratio": self.aspect_ratio or "16:9",
                "resolution": self.resolution or "480p",
                "duration": self.duration or 4,
                "fixed_lens": bool(self.fixed_lens),
                "generate_audio": bool(self.generate_audio),
            }
        )


ModeParams = Annotated[Union[ImageParams, VideoParams], Field(discriminator="kind")]


def params_from_generation(generation: Generation) -> Union[ImageParams, VideoParams]:
    """Rebuild the tagged parameters from a flattened generation row."""
    if generation.mode == GenerationMode.VIDEO:
        return VideoParams(
            input_image_urls=tuple(generation.input_image_urls or ()),
            aspect_ratio=generation.aspect_ratio,
            resolution=generation.resolution,
            duration=generation.duration,
            fixed_lens=generation.fixed_lens,
            generate_audio=generation.generate_audio,
        )
    return ImageParams(aspect_ratio=generation.aspect_ratio)


def flatten_params(params: Union[ImageParams, VideoParams]) -> dict:
    """Column values for a ``Generation`` row."""
    if isinstance(params, VideoParams):
        return {
            "input_image_urls": list(params.input_image_urls),
            "aspect_ratio": params.aspect_ratio,
            "resolution": params.resolution,
            "duration": params.duration,
            "fixed_lens": bool(params.fixed_lens),
            "generate_audio": bool(params.generate_audio),
        }
    return {
        "input_image_urls": [],
        "aspect_ratio": params.aspect_ratio,
        "resolution": None,
        "duration": None,
        "fixed_lens": False,
        "generate_audio": False,
    }


class JobDescriptor(BaseModel):
    """Snapshot of what a dispatch worker needs to submit one generation.

    Immutable once enqueued. The ``Generation`` row stays the source of truth.
    """

    model_config = ConfigDict(frozen=True)

    generation_id: UUID
    prompt: str
    model: str
    mode: GenerationMode
    params: ModeParams

    @classmethod
    def from_generation(cls, generation: Generation) -> "JobDescriptor":
        return cls(
            generation_id=generation.id,
            prompt=generation.prompt,
            model=generation.model,
            mode=generation.mode,
            params=params_from_generation(generation),
        )
