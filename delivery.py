"""Deliver a rendered GIF: back to the caller, to the Tidbyt cloud, and onto MQTT.

Channels run in a fixed order. A failed push stops the chain before the MQTT
publish; a failure to read the artifact for the response does not.
"""

import base64
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import paho.mqtt.client as mqtt

from errors import DeliveryError, PublishError, PushError
from pixlet import run_pixlet_push
from request_models import DeliveryOptions
from service_config import ServiceConfig

logger = logging.getLogger("tidbyt_proxy.delivery")

TOPIC_SUFFIX = "applet"
MQTT_KEEPALIVE_SECONDS = 30
MQTT_QOS = 0


class ChannelStatus(str, Enum):
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


@dataclass
class DeliveryOutcome:
    response: ChannelStatus = ChannelStatus.SKIPPED
    push: ChannelStatus = ChannelStatus.SKIPPED
    publish: ChannelStatus = ChannelStatus.SKIPPED
    image: Optional[bytes] = None
    error: Optional[DeliveryError] = None
    status_code: int = 200

    def headers(self) -> Dict[str, str]:
        return {
            "X-Delivery-Response": self.response.value,
            "X-Delivery-Push": self.push.value,
            "X-Delivery-Publish": self.publish.value,
        }


def build_bus_payload(applet: str, artifact: bytes) -> str:
    return json.dumps({"applet": applet, "payload": base64.b64encode(artifact).decode("ascii")})


class MessageBusPublisher:
    """One synchronous connect/publish/disconnect round trip per call."""

    def __init__(
        self,
        host: str,
        port: int = 1883,
        *,
        topic: str = "tidbyt",
        username: str = "",
        password: str = "",
        timeout: float = 5.0,
        client_factory: Optional[Callable[..., Any]] = None,
    ):
        self.host = host
        self.port = port
        self.topic = f"{topic.rstrip('/')}/{TOPIC_SUFFIX}"
        self.username = username
        self.password = password
        self.timeout = timeout
        self.client_factory = client_factory or self._default_client

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "MessageBusPublisher":
        return cls(
            config.mqtt_host,
            config.mqtt_port,
            topic=config.mqtt_topic,
            username=config.mqtt_username,
            password=config.mqtt_password,
            timeout=config.mqtt_timeout,
        )

    @staticmethod
    def _default_client():
        return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=f"tidbyt-proxy-{uuid.uuid4().hex[:12]}")

    def publish(self, applet: str, artifact: bytes) -> None:
        payload = build_bus_payload(applet, artifact)
        client = self.client_factory()
        if self.username:
            client.username_pw_set(self.username, self.password or None)
        try:
            client.connect(self.host, self.port, keepalive=MQTT_KEEPALIVE_SECONDS)
        except (OSError, ValueError) as exc:
            logger.error("MQTT connect to %s:%s failed: %s", self.host, self.port, exc)
            raise PublishError(f"Could not connect to MQTT broker {self.host}:{self.port}: {exc}") from exc

        client.loop_start()
        try:
            info = client.publish(self.topic, payload, qos=MQTT_QOS)
            info.wait_for_publish(timeout=self.timeout)
            if not info.is_published():
                raise PublishError(f"MQTT publish to {self.topic} was not acknowledged within {self.timeout}s")
        except (RuntimeError, ValueError, OSError) as exc:
            logger.error("MQTT publish to %s failed: %s", self.topic, exc)
            raise PublishError(f"MQTT publish to {self.topic} failed: {exc}") from exc
        finally:
            client.disconnect()
            client.loop_stop()
        logger.debug("published %s bytes for applet %s to %s", len(artifact), applet, self.topic)


def _read_artifact(artifact_path: Path) -> Optional[bytes]:
    try:
        return artifact_path.read_bytes()
    except OSError as exc:
        logger.error("Failed to open rendered image %s: %s", artifact_path, exc)
        return None


def deliver(
    artifact_path: Union[str, Path],
    options: DeliveryOptions,
    config: ServiceConfig,
    *,
    applet: str,
    publisher: Optional[MessageBusPublisher] = None,
) -> DeliveryOutcome:
    artifact_path = Path(artifact_path)
    outcome = DeliveryOutcome()

    if options.return_image or config.debug:
        outcome.image = _read_artifact(artifact_path)
        outcome.response = ChannelStatus.DELIVERED if outcome.image is not None else ChannelStatus.FAILED

    if config.push_enabled:
        try:
            run_pixlet_push(
                artifact_path,
                api_key=config.api_key,
                device_id=config.device_id,
                installation_id=options.installation_id,
                api_url=config.api_url,
                binary=config.pixlet_binary,
                timeout=config.pixlet_timeout,
            )
        except PushError as exc:
            outcome.push = ChannelStatus.FAILED
            outcome.error = exc
            outcome.status_code = exc.status_code
            if config.publish_enabled:
                outcome.publish = ChannelStatus.NOT_ATTEMPTED
            return outcome
        outcome.push = ChannelStatus.DELIVERED

    if config.publish_enabled:
        publisher = publisher or MessageBusPublisher.from_config(config)
        try:
            artifact = artifact_path.read_bytes()
        except OSError as exc:
            logger.error("Failed to read rendered image %s for publish: %s", artifact_path, exc)
            outcome.publish = ChannelStatus.FAILED
            outcome.error = PublishError(f"Could not read {artifact_path}: {exc}")
            outcome.status_code = outcome.error.status_code
            return outcome
        try:
            publisher.publish(applet, artifact)
        except PublishError as exc:
            outcome.publish = ChannelStatus.FAILED
            outcome.error = exc
            outcome.status_code = exc.status_code
            return outcome
        outcome.publish = ChannelStatus.DELIVERED

    return outcome
