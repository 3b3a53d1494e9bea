"""Define typed configuration models for the texture pipeline.

Use `PipelineConfig` to load, validate, and persist runtime settings and
`TranscodeOptions` for the immutable per-run transcode parameters.
"""

import dataclasses
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import List

import yaml

logger = logging.getLogger("texture_pipeline.config")


@dataclass(frozen=True)
class TranscodeOptions:
    """Per-run transcode parameters shared by every image of every input."""

    scale_factor: float = 1.0
    palette_size: int = 256
    lossy_quality: float = 0.85

    def __post_init__(self) -> None:
        errors = option_errors(self.scale_factor, self.palette_size, self.lossy_quality)
        if errors:
            raise ValueError("Invalid transcode options: " + "; ".join(errors))


def option_errors(scale_factor, palette_size, lossy_quality) -> List[str]:
    """Return human-readable problems with a set of transcode parameters."""
    errors = []
    if isinstance(scale_factor, bool) or not isinstance(scale_factor, (int, float)):
        errors.append(f"scale_factor must be a number, got {scale_factor!r}")
    elif not (0.0 < scale_factor <= 1.0):
        errors.append(f"scale_factor must be in (0, 1], got {scale_factor}")
    if isinstance(palette_size, bool) or not isinstance(palette_size, int):
        errors.append(f"palette_size must be an integer, got {palette_size!r}")
    elif not (2 <= palette_size <= 256):
        errors.append(f"palette_size must be in [2, 256], got {palette_size}")
    if isinstance(lossy_quality, bool) or not isinstance(lossy_quality, (int, float)):
        errors.append(f"lossy_quality must be a number, got {lossy_quality!r}")
    elif not (0.0 <= lossy_quality <= 1.0):
        errors.append(f"lossy_quality must be in [0, 1], got {lossy_quality}")
    return errors


# Settings used when exporting textures without any requested processing.
ORIGINAL_EXPORT_OPTIONS = TranscodeOptions(scale_factor=1.0, palette_size=256, lossy_quality=0.95)


@dataclass
class TranscodeConfig:
    """Defaults for TranscodeOptions, overridable from YAML or the CLI."""

    scale_factor: float = 0.5
    palette_size: int = 256
    lossy_quality: float = 0.85

    def to_options(self) -> TranscodeOptions:
        return TranscodeOptions(
            scale_factor=float(self.scale_factor),
            palette_size=int(self.palette_size),
            lossy_quality=float(self.lossy_quality),
        )


@dataclass
class ExportConfig:
    """Where and how outputs are written by the CLI."""

    output_suffix: str = "_optimized"
    zip_outputs: bool = False
    zip_fallback_name: str = "models"


_SUPPORTED_CONFIG_VERSION = 1


@dataclass
class PipelineConfig:
    """Master pipeline configuration."""

    config_version: int = 1
    max_workers: int = 4
    document_workers: int = 2
    log_level: str = "INFO"
    log_file: str = ""  # empty: console only
    max_image_pixels: int = 67108864  # 8192x8192
    show_progress: bool = True
    extra_texture_slots: List[str] = field(default_factory=list)

    transcode: TranscodeConfig = field(default_factory=TranscodeConfig)
    export: ExportConfig = field(default_factory=ExportConfig)

    @classmethod
    def from_yaml(cls, path: str) -> "PipelineConfig":
        """Load pipeline configuration from YAML or return defaults."""
        if not os.path.exists(path):
            logger.info("Config file '%s' not found. Using defaults.", path)
            config = cls()
            config.validate()
            return config
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(
                f"Failed to parse YAML config '{path}': {exc}"
            ) from exc
        if not isinstance(data, dict):
            raise ValueError(
                f"Config file '{path}' must contain a YAML mapping, "
                f"got {type(data).__name__}"
            )
        yaml_version = data.get("config_version", 1)
        if isinstance(yaml_version, int) and yaml_version > _SUPPORTED_CONFIG_VERSION:
            logger.warning(
                "Config file '%s' has config_version=%d, but this build only "
                "supports up to version %d. Some settings may be ignored.",
                path, yaml_version, _SUPPORTED_CONFIG_VERSION,
            )
        config = cls()
        _merge_dict_to_dataclass(config, data)
        try:
            config.validate()
        except ValueError as exc:
            raise ValueError(f"{path}: {exc}") from exc
        return config

    def to_yaml(self, path: str):
        """Write pipeline configuration to a YAML file."""
        data = dataclasses.asdict(self)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        ext = os.path.splitext(path)[1]
        tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}{ext}"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                yaml.dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    def options(self) -> TranscodeOptions:
        return self.transcode.to_options()

    def validate(self):
        """Validate all settings, raising one ValueError listing every problem."""
        errors = []

        if not (1 <= self.max_workers <= 128):
            errors.append("max_workers must be in [1, 128]")
        if not (1 <= self.document_workers <= 64):
            errors.append("document_workers must be in [1, 64]")
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if str(self.log_level).upper() not in valid_levels:
            errors.append(
                f"log_level must be one of {sorted(valid_levels)}, got '{self.log_level}'"
            )
        if self.max_image_pixels < 0:
            errors.append("max_image_pixels must be >= 0 (0 = unlimited)")

        for slot in self.extra_texture_slots:
            if not isinstance(slot, str) or not slot.strip(".").strip():
                errors.append(f"extra_texture_slots entries must be dotted paths, got {slot!r}")

        t = self.transcode
        errors.extend(
            f"transcode.{e}"
            for e in option_errors(t.scale_factor, t.palette_size, t.lossy_quality)
        )

        if not self.export.zip_fallback_name.strip():
            errors.append("export.zip_fallback_name must not be empty")
        if os.sep in self.export.output_suffix or "/" in self.export.output_suffix:
            errors.append("export.output_suffix must not contain path separators")

        if self.document_workers * self.max_workers > 256:
            logger.warning(
                "document_workers (%d) x max_workers (%d) = %d threads; "
                "expect heavy memory use on large batches.",
                self.document_workers, self.max_workers,
                self.document_workers * self.max_workers,
            )

        if errors:
            raise ValueError(
                "Configuration validation failed:\n" +
                "\n".join(f"  - {e}" for e in errors)
            )


def _merge_dict_to_dataclass(obj, data: dict, _path: str = ""):
    for key, value in data.items():
        full_key = f"{_path}{key}"
        if not hasattr(obj, key):
            logger.warning(f"Unknown config key ignored: '{full_key}'")
            continue
        field_val = getattr(obj, key)
        if dataclasses.is_dataclass(field_val) and isinstance(value, dict):
            _merge_dict_to_dataclass(field_val, value, f"{full_key}.")
            continue
        if value is None and field_val is not None:
            logger.warning(
                f"Config key '{full_key}' is null but field default is "
                f"{type(field_val).__name__}. Using default value."
            )
            continue
        expected_type = type(field_val)
        # Allow int->float and exact float->int promotion
        if (field_val is not None
                and not isinstance(value, expected_type)
                and not (expected_type is float
                         and isinstance(value, int)
                         and not isinstance(value, bool))
                and not (expected_type is int
                         and isinstance(value, float)
                         and value == int(value))):
            logger.warning(
                f"Config type mismatch for '{full_key}': "
                f"expected {expected_type.__name__}, "
                f"got {type(value).__name__} ({value!r}). "
                f"Using default value."
            )
            continue
        if expected_type is int and isinstance(value, float):
            value = int(value)
        elif expected_type is float and isinstance(value, int):
            value = float(value)
        setattr(obj, key, value)
