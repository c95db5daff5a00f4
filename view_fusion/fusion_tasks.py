"""Pipeline tasks fusing registered views into one volume.

Views are fused voxel by voxel, either by plain averaging or by a weighted
average where each view is weighted by its local sharpness. The sharpness is
the Tenengrad measure, the squared Sobel gradient magnitude, blurred so that
the weights vary smoothly across the volume. All tasks read and write
:class:`~view_fusion.registration_task.ImageSlots` and run on the backend of
the slots' compute context.
"""
import logging
from typing import Sequence, Union

import numpy as np

from .registration._compute_context import ChannelDataType, DeviceImage
from .registration_task import GaussianBlurTask, ImageSlots, SlotAllocation

logger = logging.getLogger(__name__)

FUSION_METHODS = ("tenengrad", "average", "none")


def _same_extent(images: Sequence[DeviceImage], task: str) -> None:
    dims = {image.dimensions for image in images}
    if len(dims) != 1:
        raise ValueError(f"{task} inputs must share one extent, got {sorted(dims)}")


class AverageFusionTask:
    """Average the volumes of several slots into one slot."""

    def __init__(self, source_keys: Sequence[str], destination_key: str):
        if len(source_keys) < 2:
            raise ValueError(f"Fusion needs at least two views, got {len(source_keys)}")
        self.source_keys = tuple(source_keys)
        self.destination_key = destination_key

    def enqueue(self, slots: ImageSlots) -> SlotAllocation:
        sources = [slots.get(key) for key in self.source_keys]
        _same_extent(sources, "Average fusion")
        allocation = slots.ensure_image_allocated(
            self.destination_key, ChannelDataType.FLOAT, sources[0].dimensions
        )
        fused = allocation.image.data
        fused[...] = 0
        for source in sources:
            fused += source.data
        fused /= len(sources)
        return allocation


class TenengradWeightTask:
    """Write the Tenengrad sharpness of a slot's volume into another slot.

    The weight of a voxel is the sum over the three axes of the squared Sobel
    derivative, so it is zero in flat regions and large on edges and beads.
    """

    def __init__(self, source_key: str, destination_key: str):
        self.source_key = source_key
        self.destination_key = destination_key

    def enqueue(self, slots: ImageSlots) -> SlotAllocation:
        source = slots.get(self.source_key)
        allocation = slots.ensure_image_allocated(
            self.destination_key, ChannelDataType.FLOAT, source.dimensions
        )
        ndimage = slots.context.backend.ndimage
        volume = source.data.astype(np.float32, copy=False)
        weight = allocation.image.data
        weight[...] = 0
        for axis in range(volume.ndim):
            gradient = ndimage.sobel(volume, axis=axis, mode="nearest")
            weight += gradient * gradient
        return allocation


class TenengradFusionTask:
    """Weighted average of several volumes with per-voxel weights from other slots.

    Where all weights of a voxel are zero the plain average is used.

    Args:
        destination_key: Slot receiving the fused volume
        source_keys: Slots of the views to fuse
        weight_keys: Slots of the non-negative weights, one per view
    """

    def __init__(self, destination_key: str, source_keys: Sequence[str], weight_keys: Sequence[str]):
        if len(source_keys) < 2:
            raise ValueError(f"Fusion needs at least two views, got {len(source_keys)}")
        if len(weight_keys) != len(source_keys):
            raise ValueError(
                f"Got {len(weight_keys)} weights for {len(source_keys)} views"
            )
        self.destination_key = destination_key
        self.source_keys = tuple(source_keys)
        self.weight_keys = tuple(weight_keys)

    def enqueue(self, slots: ImageSlots) -> SlotAllocation:
        sources = [slots.get(key) for key in self.source_keys]
        weights = [slots.get(key) for key in self.weight_keys]
        _same_extent(sources + weights, "Tenengrad fusion")
        allocation = slots.ensure_image_allocated(
            self.destination_key, ChannelDataType.FLOAT, sources[0].dimensions
        )
        xp = slots.context.backend.xp
        weighted = xp.zeros_like(allocation.image.data)
        total = xp.zeros_like(weighted)
        average = xp.zeros_like(weighted)
        for source, weight in zip(sources, weights):
            weighted += weight.data * source.data
            total += weight.data
            average += source.data
        average /= len(sources)
        covered = total > 0
        allocation.image.data[...] = xp.where(
            covered, weighted / xp.where(covered, total, 1), average
        )
        return allocation


class ReleaseTask:
    """Release the volumes of the given slots."""

    def __init__(self, *keys: str):
        self.keys = keys

    def enqueue(self, slots: ImageSlots) -> None:
        slots.release(*self.keys)


def fuse_with_smooth_weights(
    destination_key: str,
    source_keys: Sequence[str],
    sigma: Union[float, Sequence[float]] = 2.0,
) -> list:
    """Tasks fusing ``source_keys`` into ``destination_key`` with blurred Tenengrad weights.

    Raw and blurred weights live in temporary slots named after the destination
    and the view; the raw weights are released once blurred and the blurred
    ones once the views are fused.
    """
    tasks = []
    weight_keys = []
    for key in source_keys:
        raw_key = f"{destination_key}-{key}-weight"
        smooth_key = f"{destination_key}-{key}-weight-blur"
        weight_keys.append(smooth_key)
        tasks.append(TenengradWeightTask(key, raw_key))
        tasks.append(GaussianBlurTask(raw_key, smooth_key, sigma))
        tasks.append(ReleaseTask(raw_key))
    tasks.append(TenengradFusionTask(destination_key, source_keys, weight_keys))
    tasks.append(ReleaseTask(*weight_keys))
    return tasks


def create_fusion_tasks(
    method: str,
    destination_key: str,
    source_keys: Sequence[str],
    sigma: Union[float, Sequence[float]] = 2.0,
) -> list:
    logger.debug(f"Fusing {list(source_keys)} into '{destination_key}' with {method} fusion")
    if method == "tenengrad":
        return fuse_with_smooth_weights(destination_key, source_keys, sigma)
    if method == "average":
        return [AverageFusionTask(source_keys, destination_key)]
    if method == "none":
        return []
    raise ValueError(f"Unknown fusion method '{method}', expected one of {FUSION_METHODS}")
