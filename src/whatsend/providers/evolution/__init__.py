"""Evolution API WhatsApp capability."""

from whatsend.providers.evolution.client import (
    EvolutionSessionHandle,
    EvolutionWhatsAppCapability,
    instance_name_for,
)
from whatsend.providers.evolution.instance_manager import EvolutionInstanceManager

__all__ = [
    "EvolutionSessionHandle",
    "EvolutionWhatsAppCapability",
    "EvolutionInstanceManager",
    "instance_name_for",
]
