"""Persona, device context and tool schema for the realtime voice assistant."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from ..config import Settings, settings as default_settings
from ..services.device_registry import Device
from ..services.tool_dispatcher import TOOL_DECLARATIONS

RESPONSE_MODALITY_AUDIO = "AUDIO"

ASSISTANT_INSTRUCTIONS = """Você é o assistente virtual da Vitalidade Automação.
Seu tom é calmo, respeitoso e eficiente. Você ajuda pessoas com mobilidade reduzida.
Dispositivos disponíveis: {devices}.
Ao receber um comando, use as ferramentas disponíveis para controlar a casa.
Responda em Português do Brasil de forma curta e amigável."""


@dataclass(frozen=True)
class HandshakeRequest:
    """Everything the remote peer needs to open a session."""

    model: str
    system_instruction: str
    voice_name: str
    response_modalities: tuple[str, ...] = (RESPONSE_MODALITY_AUDIO,)
    function_declarations: list[dict[str, Any]] = field(
        default_factory=lambda: [dict(declaration) for declaration in TOOL_DECLARATIONS]
    )


def describe_devices(devices: Iterable[Device]) -> str:
    return ", ".join(f"{device.name} (no cômodo {device.room})" for device in devices)


def build_system_instruction(devices: Iterable[Device]) -> str:
    """Render the assistant persona with the device list as it stands right now."""
    return ASSISTANT_INSTRUCTIONS.format(devices=describe_devices(devices))


def build_handshake(devices: Iterable[Device], settings: Optional[Settings] = None) -> HandshakeRequest:
    cfg = settings or default_settings
    return HandshakeRequest(
        model=cfg.live_model,
        system_instruction=build_system_instruction(devices),
        voice_name=cfg.voice_name,
    )
