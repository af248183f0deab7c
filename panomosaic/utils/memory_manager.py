"""
Memory estimation for mosaic canvases
"""

import psutil
import logging
from typing import Tuple
from contextlib import contextmanager

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
FLOAT32_BYTES = 4


class MemoryManager:
    """Estimate and track memory used while compositing a mosaic"""

    def __init__(self, safety_fraction: float = 0.8):
        """
        Args:
            safety_fraction: Share of available memory a single build may use
        """
        if not 0 < safety_fraction <= 1:
            raise ValueError(f"safety_fraction must be in (0, 1], got {safety_fraction}")
        self.safety_fraction = safety_fraction
        self._peak_usage_mb = 0.0

    def get_memory_usage(self) -> float:
        """Resident memory of this process in MB"""
        try:
            usage_mb = psutil.Process().memory_info().rss / BYTES_PER_MB
        except psutil.Error as e:
            logger.warning(f"Could not get memory usage: {e}")
            return 0.0
        self._peak_usage_mb = max(self._peak_usage_mb, usage_mb)
        return usage_mb

    def get_available_memory(self) -> float:
        """Available system memory in MB"""
        return psutil.virtual_memory().available / BYTES_PER_MB

    def get_peak_usage(self) -> float:
        """Peak resident memory seen by get_memory_usage, in MB"""
        return self._peak_usage_mb

    @staticmethod
    def estimate_canvas_mb(
        canvas_shape: Tuple[int, int],
        n_channels: int,
        n_buffers: int = 1
    ) -> float:
        """
        Memory for compositing onto a canvas, in MB.

        Counts ``n_buffers`` accumulation buffers (colour sum plus weight sum)
        plus, per buffer, one warped float32 image and its two remap maps.

        Args:
            canvas_shape: (n_phi, n_theta)
            n_channels: Channels per image, alpha included
            n_buffers: Accumulation buffers alive at once (one per worker)
        """
        n_pixels = canvas_shape[0] * canvas_shape[1]
        buffer_floats = n_pixels * n_channels
        warp_floats = n_pixels * (n_channels + 2)
        total = n_buffers * (buffer_floats + warp_floats) + buffer_floats
        return total * FLOAT32_BYTES / BYTES_PER_MB

    def estimate_can_process(self, estimated_mb: float) -> bool:
        """
        Check if there's enough memory to process estimated workload

        Args:
            estimated_mb: Estimated memory requirement in MB

        Returns:
            True if processing is likely safe, False otherwise
        """
        safe_available = self.get_available_memory() * self.safety_fraction
        can_process = estimated_mb < safe_available

        if not can_process:
            logger.warning(
                f"Estimated memory requirement ({estimated_mb:.0f} MB) "
                f"may exceed safe available memory ({safe_available:.0f} MB)"
            )

        return can_process

    @contextmanager
    def track_operation(self, name: str):
        """
        Context manager logging the memory change of an operation

        Example:
            with memory_manager.track_operation("compositing"):
                blender.blend(positions)
        """
        start_usage = self.get_memory_usage()
        try:
            yield
        finally:
            end_usage = self.get_memory_usage()
            logger.info(f"Operation '{name}': memory change {end_usage - start_usage:+.1f} MB "
                        f"(now {end_usage:.1f} MB)")
