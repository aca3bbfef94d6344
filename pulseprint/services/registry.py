import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from pulseprint.core.exceptions import (
    NoDefaultPrinterError,
    PrinterExistsError,
    PrinterNotFoundError,
    RegistryIOError,
    RegistryParseError,
)
from pulseprint.schemas.connection import DEFAULT_MQTT_PORT, ConnectionParams, EngineConfig

logger = logging.getLogger("PrinterRegistry")


class PrinterConfig(BaseModel):
    """One registered printer and how to reach it."""
    name: str
    ip: str
    device_id: str
    access_code: str = Field(repr=False)
    port: int = Field(default=DEFAULT_MQTT_PORT, ge=1, le=65535)
    use_tls: bool = True
    model: Optional[str] = None
    firmware_version: Optional[str] = None

    def mqtt_url(self) -> str:
        scheme = "mqtts" if self.use_tls else "mqtt"
        return f"{scheme}://{self.ip}:{self.port}"

    def connection_params(self) -> ConnectionParams:
        return ConnectionParams(
            host=self.ip,
            device_id=self.device_id,
            access_code=self.access_code,
            port=self.port,
            tls_required=self.use_tls,
        )

    def report_topic(self) -> str:
        return self.connection_params().report_topic()

    def request_topic(self) -> str:
        return self.connection_params().request_topic()


class AppConfig(BaseModel):
    """
    The persisted registry: named printers, the default one and the engine
    tunables. Stored as pretty-printed JSON.
    """
    printers: Dict[str, PrinterConfig] = Field(default_factory=dict)
    default_printer: Optional[str] = None
    engine: EngineConfig = Field(default_factory=EngineConfig)

    @classmethod
    def load(cls, path: Path) -> "AppConfig":
        """Missing file means an empty registry, not an error."""
        if not path.exists():
            logger.debug(f"No registry at {path}, using defaults")
            return cls()

        try:
            contents = path.read_text(encoding="utf-8")
        except OSError as e:
            raise RegistryIOError(f"Failed to read config file {path}: {e}") from e

        try:
            return cls.model_validate_json(contents)
        except ValidationError as e:
            raise RegistryParseError(f"Failed to parse config {path}: {e}") from e

    def save(self, path: Path) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            raise RegistryIOError(f"Failed to write config file {path}: {e}") from e
        logger.info(f"Saved {len(self.printers)} printer(s) to {path}")

    def add_printer(self, name: str, printer: PrinterConfig) -> None:
        if name in self.printers:
            raise PrinterExistsError(name)
        self.printers[name] = printer
        # First printer becomes the default
        if self.default_printer is None:
            self.default_printer = name

    def remove_printer(self, name: str) -> PrinterConfig:
        if name not in self.printers:
            raise PrinterNotFoundError(name)
        printer = self.printers.pop(name)
        if self.default_printer == name:
            self.default_printer = next(iter(self.printers), None)
        return printer

    def get_printer(self, name: str) -> PrinterConfig:
        try:
            return self.printers[name]
        except KeyError:
            raise PrinterNotFoundError(name) from None

    def get_default_printer(self) -> PrinterConfig:
        if self.default_printer is None:
            raise NoDefaultPrinterError()
        return self.get_printer(self.default_printer)

    def set_default_printer(self, name: str) -> None:
        if name not in self.printers:
            raise PrinterNotFoundError(name)
        self.default_printer = name

    def list_printers(self) -> List[Tuple[str, PrinterConfig]]:
        return sorted(self.printers.items())
