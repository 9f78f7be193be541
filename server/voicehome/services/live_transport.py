"""Message-passing boundary to the remote conversational model.

The session manager speaks in wire-shaped dictionaries:

* outbound realtime input: ``{"media": {"mimeType": ..., "data": <base64>}}``
* outbound tool response: ``{"functionResponses": [{"id", "name", "response"}]}``
* inbound server message: ``serverContent.modelTurn.parts[].inlineData.data``
  (base64 PCM) and/or ``toolCall.functionCalls[]``

``GeminiLiveTransport`` maps those shapes onto the google-genai Live API.
"""
from __future__ import annotations

import base64
import logging
from typing import Any, AsyncIterator, Optional, Protocol

from google import genai
from google.genai import types

from ..ai_agents.realtime_conversation import HandshakeRequest

logger = logging.getLogger(__name__)


class LiveLink(Protocol):
    """An open duplex session with the remote peer."""

    async def send_realtime_input(self, message: dict[str, Any]) -> None: ...

    async def send_tool_response(self, message: dict[str, Any]) -> None: ...

    def receive(self) -> AsyncIterator[dict[str, Any]]: ...

    async def close(self) -> None: ...


class LiveTransport(Protocol):
    async def open(self, handshake: HandshakeRequest) -> LiveLink: ...


def _schema_from_dict(schema: dict[str, Any]) -> types.Schema:
    properties = {
        name: _schema_from_dict(value) for name, value in (schema.get("properties") or {}).items()
    }
    return types.Schema(
        type=schema.get("type", "OBJECT"),
        description=schema.get("description"),
        properties=properties or None,
        required=list(schema.get("required") or []) or None,
    )


def build_live_config(handshake: HandshakeRequest) -> types.LiveConnectConfig:
    """Translate the handshake into the SDK's LiveConnectConfig."""
    declarations = [
        types.FunctionDeclaration(
            name=declaration["name"],
            description=declaration.get("description"),
            parameters=_schema_from_dict(declaration["parameters"]),
        )
        for declaration in handshake.function_declarations
    ]
    return types.LiveConnectConfig(
        response_modalities=list(handshake.response_modalities),
        system_instruction=types.Content(
            parts=[types.Part.from_text(text=handshake.system_instruction)],
            role="user",
        ),
        tools=[types.Tool(function_declarations=declarations)],
        speech_config=types.SpeechConfig(
            voice_config=types.VoiceConfig(
                prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=handshake.voice_name)
            )
        ),
    )


def server_message_to_wire(message: types.LiveServerMessage) -> dict[str, Any]:
    """Project an SDK message onto the wire fields the session consumes.

    Inline audio is re-encoded with the standard base64 alphabet.
    """
    wire: dict[str, Any] = {}
    content = message.server_content
    if content is not None:
        server_content: dict[str, Any] = {}
        if content.model_turn is not None:
            parts = []
            for part in content.model_turn.parts or []:
                entry: dict[str, Any] = {}
                if part.inline_data is not None and part.inline_data.data:
                    entry["inlineData"] = {
                        "mimeType": part.inline_data.mime_type,
                        "data": base64.b64encode(part.inline_data.data).decode("ascii"),
                    }
                if part.text:
                    entry["text"] = part.text
                parts.append(entry)
            server_content["modelTurn"] = {"parts": parts}
        if content.turn_complete:
            server_content["turnComplete"] = True
        if content.interrupted:
            server_content["interrupted"] = True
        wire["serverContent"] = server_content
    if message.tool_call is not None:
        wire["toolCall"] = {
            "functionCalls": [
                {"id": call.id, "name": call.name, "args": dict(call.args or {})}
                for call in message.tool_call.function_calls or []
            ]
        }
    return wire


class GeminiLiveLink:
    def __init__(self, session_context: Any, session: Any) -> None:
        self._session_context = session_context
        self._session = session
        self._closed = False

    async def send_realtime_input(self, message: dict[str, Any]) -> None:
        media = message["media"]
        await self._session.send_realtime_input(
            audio=types.Blob(data=base64.b64decode(media["data"]), mime_type=media["mimeType"])
        )

    async def send_tool_response(self, message: dict[str, Any]) -> None:
        responses = [
            types.FunctionResponse(id=entry["id"], name=entry["name"], response=entry["response"])
            for entry in message["functionResponses"]
        ]
        await self._session.send_tool_response(function_responses=responses)

    async def receive(self) -> AsyncIterator[dict[str, Any]]:
        # session.receive() ends after each turn_complete; keep reading until closed.
        # A turn that yields nothing means the socket went away.
        while not self._closed:
            received = 0
            async for response in self._session.receive():
                received += 1
                yield server_message_to_wire(response)
            if not received:
                logger.info("Live session stream ended by remote peer")
                break

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._session_context.__aexit__(None, None, None)


class GeminiLiveTransport:
    """Open Live API sessions with the configured API key."""

    def __init__(self, api_key: Optional[str], *, client: Optional[genai.Client] = None) -> None:
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self._api_key:
                raise RuntimeError("GEMINI_API_KEY missing; set it in the environment or .env")
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    async def open(self, handshake: HandshakeRequest) -> GeminiLiveLink:
        client = self._get_client()
        session_context = client.aio.live.connect(
            model=handshake.model,
            config=build_live_config(handshake),
        )
        session = await session_context.__aenter__()
        logger.info("Live session opened (model=%s, voice=%s)", handshake.model, handshake.voice_name)
        return GeminiLiveLink(session_context, session)
