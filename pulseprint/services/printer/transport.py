import logging
import ssl
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Optional, Protocol, Union

import aiomqtt
import paho.mqtt.client as mqtt_base

from pulseprint.core.exceptions import TransportError

logger = logging.getLogger("AiomqttTransport")

# Bambu printers accept exactly this user for LAN MQTT
MQTT_USERNAME = "bblp"
SUBACK_FAILURE = 0x80


class Transport(Protocol):
    """
    Publish/subscribe capability consumed by the ConnectionSupervisor.
    Every method raises TransportError on failure.
    """

    async def connect(self, host: str, port: int, tls_required: bool) -> Any: ...

    async def authenticate(self, session: Any, username: str, credential: str) -> None: ...

    async def subscribe(self, session: Any, topic: str) -> AsyncIterator[bytes]: ...

    async def publish(self, session: Any, topic: str, payload: Union[bytes, str]) -> None: ...

    def is_connected(self, session: Any) -> bool: ...

    async def close(self, session: Any) -> None: ...


class MqttSession:
    """One aiomqtt client from CONNECT to DISCONNECT."""

    def __init__(self, host: str, port: int, tls_context: Optional[ssl.SSLContext]):
        self.host = host
        self.port = port
        self.tls_context = tls_context
        self.client: Optional[aiomqtt.Client] = None
        self.connected = False
        self.stack = AsyncExitStack()


class AiomqttTransport:
    """
    Transport over aiomqtt (MQTT 3.1.1 over TLS).
    connect() prepares the session; authenticate() performs the actual MQTT
    CONNECT because the credentials travel in that packet.
    """

    def __init__(self, keepalive: float = 30.0, timeout: float = 10.0, identifier: Optional[str] = None):
        self.keepalive = keepalive
        self.timeout = timeout
        self.identifier = identifier

    def _create_ssl_context(self) -> ssl.SSLContext:
        """Printers ship self-signed certificates, so no verification."""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context

    async def connect(self, host: str, port: int, tls_required: bool) -> MqttSession:
        try:
            tls_context = self._create_ssl_context() if tls_required else None
        except ssl.SSLError as e:
            raise TransportError(f"Failed to build TLS context: {e}") from e
        return MqttSession(host, port, tls_context)

    async def authenticate(self, session: MqttSession, username: str, credential: str) -> None:
        client = aiomqtt.Client(
            hostname=session.host,
            port=session.port,
            username=username,
            password=credential,
            tls_context=session.tls_context,
            protocol=mqtt_base.MQTTv311,  # Bambu firmware only speaks 3.1.1
            identifier=self.identifier,
            keepalive=int(self.keepalive),
            timeout=self.timeout
        )
        logger.info(f"Connecting to {session.host}:{session.port} (TLS={session.tls_context is not None})...")
        try:
            session.client = await session.stack.enter_async_context(client)
        except (aiomqtt.MqttError, OSError) as e:
            raise TransportError(f"Connection to {session.host}:{session.port} failed: {e}") from e
        session.connected = True
        logger.info(f"Connected to {session.host}:{session.port}")

    async def subscribe(self, session: MqttSession, topic: str) -> AsyncIterator[bytes]:
        client = self._require_client(session)
        try:
            granted = await client.subscribe(topic, qos=0)
        except (aiomqtt.MqttError, OSError) as e:
            session.connected = False
            raise TransportError(f"Subscribe to {topic} failed: {e}") from e

        if any(_is_rejected(code) for code in granted or ()):
            raise TransportError(f"Subscribe to {topic} rejected by broker ({granted})")

        logger.debug(f"Subscribed to {topic}")
        return self._payloads(session, client)

    async def _payloads(self, session: MqttSession, client: aiomqtt.Client) -> AsyncIterator[bytes]:
        try:
            async for message in client.messages:
                payload = message.payload
                if isinstance(payload, str):
                    payload = payload.encode("utf-8")
                elif payload is None:
                    payload = b""
                elif not isinstance(payload, (bytes, bytearray)):
                    payload = str(payload).encode("utf-8")
                yield bytes(payload)
        except (aiomqtt.MqttError, OSError) as e:
            session.connected = False
            raise TransportError(f"Connection lost: {e}") from e
        session.connected = False
        raise TransportError("Message stream ended")

    async def publish(self, session: MqttSession, topic: str, payload: Union[bytes, str]) -> None:
        client = self._require_client(session)
        try:
            await client.publish(topic, payload=payload, qos=0)
        except (aiomqtt.MqttError, OSError) as e:
            session.connected = False
            raise TransportError(f"Publish to {topic} failed: {e}") from e

    def is_connected(self, session: MqttSession) -> bool:
        return session.connected

    async def close(self, session: MqttSession) -> None:
        session.connected = False
        try:
            await session.stack.aclose()
        except (aiomqtt.MqttError, OSError) as e:
            # The broker side is already gone, nothing left to release
            logger.debug(f"Ignoring error while closing session to {session.host}: {e}")
        session.client = None

    def _require_client(self, session: MqttSession) -> aiomqtt.Client:
        if session.client is None or not session.connected:
            raise TransportError("Session is not connected")
        return session.client


def _is_rejected(code: Any) -> bool:
    # paho 2 returns ReasonCode objects, older versions plain ints
    is_failure = getattr(code, "is_failure", None)
    if is_failure is not None:
        return bool(is_failure)
    return int(code) >= SUBACK_FAILURE
