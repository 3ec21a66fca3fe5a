import argparse
import logging
import os
import sys
from typing import List, Optional, Sequence

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from request_models import MAX_UPLOAD_SIZE

SERVICE_LOGGER = "tidbyt_proxy"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

repo_dir = os.path.dirname(os.path.abspath(__file__))
DEFAULT_TEMPLATE_DIR = os.path.join(repo_dir, "templates")
TRUTHY = {"1", "true", "yes", "on"}


class ServiceConfig(BaseModel):
    """Process-wide settings, built once at startup and never mutated."""

    model_config = ConfigDict(frozen=True)

    http_host: str = "0.0.0.0"
    http_port: int = Field(default=8080, gt=0)
    scratch_dir: str = "/tmp"
    debug: bool = False
    log_file: Optional[str] = None
    template_dir: str = DEFAULT_TEMPLATE_DIR

    pixlet_binary: str = "pixlet"
    pixlet_timeout: float = Field(default=30.0, gt=0)

    api_url: str = ""
    api_key: str = ""
    device_id: str = ""

    mqtt_host: str = ""
    mqtt_port: int = Field(default=1883, gt=0)
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_topic: str = "tidbyt"
    mqtt_timeout: float = Field(default=5.0, gt=0)
    applet_name: str = "tidbyt-proxy"

    max_upload_bytes: int = Field(default=MAX_UPLOAD_SIZE, gt=0)

    @property
    def push_enabled(self) -> bool:
        return bool(self.api_key and self.device_id)

    @property
    def publish_enabled(self) -> bool:
        return bool(self.mqtt_host)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in TRUTHY


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Render notifications and images with pixlet and deliver them to a Tidbyt.")

    http = parser.add_argument_group("HTTP Server Options")
    http.add_argument("--http-ip", dest="http_host", default=os.getenv("HTTP_IP", "0.0.0.0"), help="HTTP server IP [HTTP_IP]")
    http.add_argument("--http-port", dest="http_port", type=int, default=int(os.getenv("HTTP_PORT", "8080")), help="HTTP server port [HTTP_PORT]")
    http.add_argument(
        "--scratch-dir",
        dest="scratch_dir",
        default=os.getenv("SCRATCH_DIR", "/tmp"),
        help="Scratch directory used for renders [SCRATCH_DIR]",
    )
    http.add_argument("--template-dir", dest="template_dir", default=os.getenv("TEMPLATE_DIR", DEFAULT_TEMPLATE_DIR), help="Directory holding *.star templates [TEMPLATE_DIR]")
    http.add_argument(
        "--max-upload-bytes",
        dest="max_upload_bytes",
        type=int,
        default=int(os.getenv("MAX_UPLOAD_BYTES", str(MAX_UPLOAD_SIZE))),
        help="Largest accepted multipart image upload [MAX_UPLOAD_BYTES]",
    )

    pixlet = parser.add_argument_group("Pixlet Options")
    pixlet.add_argument("--pixlet-binary", dest="pixlet_binary", default=os.getenv("PIXLET_BINARY", "pixlet"), help="pixlet executable name or path [PIXLET_BINARY]")
    pixlet.add_argument(
        "--pixlet-timeout",
        dest="pixlet_timeout",
        type=float,
        default=float(os.getenv("PIXLET_TIMEOUT", "30")),
        help="Seconds before a pixlet render or push is killed [PIXLET_TIMEOUT]",
    )

    tidbyt = parser.add_argument_group("Tidbyt Options")
    tidbyt.add_argument("--tidbyt-api-url", dest="api_url", default=os.getenv("TIDBYT_API_URL", ""), help="Tidbyt API url [TIDBYT_API_URL]")
    tidbyt.add_argument("--tidbyt-api-key", dest="api_key", default=os.getenv("TIDBYT_API_KEY", ""), help="Tidbyt API key [TIDBYT_API_KEY]")
    tidbyt.add_argument("--tidbyt-device-id", dest="device_id", default=os.getenv("TIDBYT_DEVICE_ID", ""), help="Tidbyt device id [TIDBYT_DEVICE_ID]")

    mqtt = parser.add_argument_group("MQTT Options")
    mqtt.add_argument("--mqtt-host", dest="mqtt_host", default=os.getenv("MQTT_HOST", ""), help="MQTT broker host [MQTT_HOST]")
    mqtt.add_argument("--mqtt-port", dest="mqtt_port", type=int, default=int(os.getenv("MQTT_PORT", "1883")), help="MQTT broker port [MQTT_PORT]")
    mqtt.add_argument("--mqtt-username", dest="mqtt_username", default=os.getenv("MQTT_USERNAME", ""), help="MQTT username [MQTT_USERNAME]")
    mqtt.add_argument("--mqtt-password", dest="mqtt_password", default=os.getenv("MQTT_PASSWORD", ""), help="MQTT password [MQTT_PASSWORD]")
    mqtt.add_argument("--mqtt-topic", dest="mqtt_topic", default=os.getenv("MQTT_TOPIC", "tidbyt"), help="Base MQTT topic [MQTT_TOPIC]")
    mqtt.add_argument(
        "--mqtt-timeout",
        dest="mqtt_timeout",
        type=float,
        default=float(os.getenv("MQTT_TIMEOUT", "5")),
        help="Seconds to wait for the broker to acknowledge a publish [MQTT_TIMEOUT]",
    )
    mqtt.add_argument("--applet-name", dest="applet_name", default=os.getenv("APPLET_NAME", "tidbyt-proxy"), help="Applet name published for image requests [APPLET_NAME]")

    parser.add_argument("--debug-mode", dest="debug", action="store_true", default=_env_flag("DEBUG_MODE"), help="Debug mode [DEBUG_MODE]")
    parser.add_argument("--log-file", dest="log_file", default=os.getenv("LOG_FILE") or None, help="Also write logs to this file [LOG_FILE]")
    return parser


def load_config(argv: Optional[Sequence[str]] = None, *, env_file: Optional[str] = None) -> ServiceConfig:
    """Load .env, then parse flags whose defaults come from the environment."""
    load_dotenv(dotenv_path=env_file or os.path.join(os.getcwd(), ".env"), override=False)
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    return ServiceConfig(**vars(args))


def configure_logging(debug: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(SERVICE_LOGGER)
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    if not logger.handlers:
        formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)
        handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
        if log_file:
            handlers.append(logging.FileHandler(log_file))
        for handler in handlers:
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        logger.propagate = False
    return logger
