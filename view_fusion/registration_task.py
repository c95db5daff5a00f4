"""Pipeline tasks for registered two-view fusion.

A pipeline keeps device volumes in named slots. :class:`RegistrationTask`
registers a processed (e.g. blurred) pair of views, then applies the smoothed
transform to the original moving view and writes the result into an output
slot. :class:`GaussianBlurTask` produces the processed views.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Union

import numpy as np

from .parameters import RegistrationParameters
from .registration._compute_context import ChannelDataType, ComputeContext, DeviceImage
from .registration.engine import RegistrationEngine, RegistrationResult

logger = logging.getLogger(__name__)


class SlotStatus(enum.Enum):
    """Whether a slot's image was newly allocated or an existing one was reused."""

    FRESH = enum.auto()
    REUSED = enum.auto()


@dataclass(frozen=True)
class SlotAllocation:
    image: DeviceImage
    status: SlotStatus

    @property
    def freshly_allocated(self) -> bool:
        return self.status is SlotStatus.FRESH


class ImageSlots:
    """Named device volumes shared by the tasks of one pipeline."""

    def __init__(self, context: ComputeContext):
        self.context = context
        self._images: Dict[str, DeviceImage] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._images

    def keys(self) -> list[str]:
        return list(self._images)

    def put(self, key: str, image: Union[DeviceImage, np.ndarray]) -> DeviceImage:
        """Store a volume in a slot, uploading host arrays to the device."""
        if isinstance(image, np.ndarray):
            image = self.context.image_from_array(image)
        old = self._images.get(key)
        if old is not None and old is not image:
            old.release()
        self._images[key] = image
        return image

    def get(self, key: str) -> DeviceImage:
        try:
            return self._images[key]
        except KeyError:
            raise KeyError(f"No image in slot '{key}'. Available slots: {self.keys()}")

    def ensure_image_allocated(
        self,
        key: str,
        data_type: ChannelDataType,
        dimensions: Sequence[int],
    ) -> SlotAllocation:
        """Return the slot's image, allocating a new one if missing or of the wrong shape or type."""
        image = self._images.get(key)
        if (
            image is not None
            and not image.released
            and image.channel_data_type == data_type
            and image.dimensions == tuple(dimensions)
        ):
            return SlotAllocation(image, SlotStatus.REUSED)
        if image is not None:
            image.release()
        image = self.context.create_image(dimensions, data_type)
        self._images[key] = image
        return SlotAllocation(image, SlotStatus.FRESH)

    def release(self, *keys: str) -> None:
        for key in keys:
            image = self._images.pop(key, None)
            if image is not None:
                image.release()

    def release_all(self) -> None:
        """Release every slot and return the cached device memory."""
        self.release(*self.keys())
        self.context.cleanup_memory()

    def read(self, key: str) -> np.ndarray:
        return self.context.read_image(self.get(key))


class GaussianBlurTask:
    """Blur the volume of one slot into another slot."""

    def __init__(self, source_key: str, destination_key: str, sigma: Union[float, Sequence[float]] = 0.5):
        self.source_key = source_key
        self.destination_key = destination_key
        # per axis (x, y, z), like every other extent in this package
        self.sigma = tuple(sigma) if isinstance(sigma, Sequence) else (sigma,) * 3

    def enqueue(self, slots: ImageSlots) -> SlotAllocation:
        source = slots.get(self.source_key)
        allocation = slots.ensure_image_allocated(
            self.destination_key, ChannelDataType.FLOAT, source.dimensions
        )
        backend = slots.context.backend
        sx, sy, sz = self.sigma
        backend.ndimage.gaussian_filter(
            source.data.astype(np.float32, copy=False),
            sigma=(sz, sy, sx),
            output=allocation.image.data,
            mode="nearest",
        )
        return allocation


@dataclass(frozen=True)
class TaskOutcome:
    """Result of one :class:`RegistrationTask` run."""

    registration: RegistrationResult
    original_score: float
    transformed: SlotAllocation


class RegistrationTask:
    """Registers the second view onto the first and transforms the original second view.

    Args:
        processed_reference_key: Reference volume used for registration
        processed_moving_key: Volume registered to the reference
        original_reference_key: Original data of the processed reference
        original_moving_key: Original data of the processed moving volume, the
            one transformed once the registration is found
        transformed_key: Slot receiving the transformed original moving volume
        params: Registration parameters, defaults if None
    """

    def __init__(
        self,
        processed_reference_key: str,
        processed_moving_key: str,
        original_reference_key: str,
        original_moving_key: str,
        transformed_key: str,
        params: Optional[RegistrationParameters] = None,
    ):
        self.input_keys = (
            processed_reference_key,
            processed_moving_key,
            original_reference_key,
            original_moving_key,
        )
        self.transformed_key = transformed_key
        self.parameters = params if params is not None else RegistrationParameters()
        self.engine: Optional[RegistrationEngine] = None

    def enqueue(self, slots: ImageSlots) -> TaskOutcome:
        image_a, image_b, image_c, image_d = (slots.get(key) for key in self.input_keys)
        dims = {image.dimensions for image in (image_a, image_b, image_c, image_d)}
        if len(dims) != 1:
            raise ValueError(f"Registration task inputs must share one extent, got {sorted(dims)}")

        if self.engine is None:
            self.engine = RegistrationEngine(self.parameters, slots.context)
        self.engine.bind(image_a, image_b)
        result = self.engine.register()

        self.engine.bind(image_c, image_d)
        if result.fallback:
            original_score = float("nan")
        else:
            raw_score = self.engine.compute_score(result.raw_theta)
            original_score = self.engine.compute_score(result.theta)
            logger.info(
                f"score = {raw_score:.6f} for best parameters, {original_score:.6f} for "
                "smoothed parameters on original images"
            )

        allocation = slots.ensure_image_allocated(
            self.transformed_key, image_a.channel_data_type, image_a.dimensions
        )
        self.engine.transform(allocation.image, image_d, result.theta)
        return TaskOutcome(registration=result, original_score=original_score, transformed=allocation)
