"""Generation capability interface."""

from __future__ import annotations

import abc

from tryon.models import CapabilityOutput, GenerationOptions


class GenerationCapability(abc.ABC):
    """Opaque image-generation backend used by the orchestrator.

    Implementations raise :class:`tryon.errors.CapabilityError`; its
    ``status_code`` tells the retry executor whether another attempt may help.
    """

    name = "capability"

    @abc.abstractmethod
    async def generate(
        self,
        customer_image: bytes,
        product_image: bytes,
        options: GenerationOptions,
    ) -> CapabilityOutput:
        """Synthesize the customer wearing the product."""
