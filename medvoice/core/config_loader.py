"""
medvoice/core/config_loader.py

MedVoice - Configuration Management
-----------------------------------
• YAML/JSON configuration loader with Pydantic validation and per-environment overrides
• Environment variable injection (MEDVOICE_SECTION__KEY=value) and deep config merging
• Sections for the voice controller, synthesis and capture backends, cloud services and logging

License: Apache 2.0
"""

from __future__ import annotations

import json
import os
from enum import Enum, auto
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from medvoice.core.errors import ConfigError, ConfigLoadError, ConfigValidationError
from medvoice.utils.logger import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "MEDVOICE_"

# -------------------------------
# Enumerations and Constants
# -------------------------------

class ConfigEnvironment(Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"

class ConfigFormat(Enum):
    YAML = auto()
    JSON = auto()

DEFAULT_CONFIG_PATHS = [
    "config/medvoice.yaml",
    "config/config.yaml",
    "medvoice.yaml",
]

DEFAULT_ENV_CONFIG_PATHS = {
    ConfigEnvironment.DEVELOPMENT: ["config/dev.yaml", "config/development.yaml"],
    ConfigEnvironment.TESTING: ["config/test.yaml", "config/testing.yaml"],
    ConfigEnvironment.STAGING: ["config/stage.yaml", "config/staging.yaml"],
    ConfigEnvironment.PRODUCTION: ["config/prod.yaml", "config/production.yaml"],
}

# -------------------------------
# Configuration Schema Models
# -------------------------------

class VoiceUIConfig(BaseModel):
    """Interaction controller settings."""
    default_language: str = Field(default="english", description="Language tag active at startup")
    capture_timeout: float = Field(default=30.0, gt=0.0, le=300.0, description="Maximum capture duration in seconds")
    greet_on_activate: bool = Field(default=True, description="Speak a greeting on first activation")
    phrase_overrides: Dict[str, Dict[str, str]] = Field(default_factory=dict, description="Per-language phrase overrides")

class SynthesisConfig(BaseModel):
    """Speech synthesis settings."""
    backend: str = Field(default="local", pattern="^(local|cloud)$", description="local (pyttsx3) or cloud (OpenAI)")
    start_guard_floor: float = Field(default=5.0, gt=0.0, description="Minimum seconds to wait for playback to start")
    start_guard_per_char: float = Field(default=0.1, ge=0.0, description="Extra start-guard seconds per character")
    base_rate_wpm: int = Field(default=170, ge=50, le=400, description="Words per minute at rate multiplier 1.0")

class CaptureConfig(BaseModel):
    """Speech capture settings."""
    backend: str = Field(default="local", pattern="^(local|cloud)$", description="local (Vosk) or cloud (Whisper)")
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Microphone sample rate")
    chunk_size: int = Field(default=1024, ge=256, le=8192, description="Frames per audio buffer")
    phrase_time_limit: Optional[float] = Field(default=None, description="Seconds per background-listen phrase")
    vosk_model_paths: Dict[str, str] = Field(
        default_factory=lambda: {
            "en": "models/vosk-model-small-en-in-0.4",
            "hi": "models/vosk-model-small-hi-0.22",
        },
        description="Vosk model directory per language family",
    )

class CloudConfig(BaseModel):
    """OpenAI service settings."""
    api_key: Optional[str] = Field(default=None, description="API key; OPENAI_API_KEY is used when unset")
    base_url: Optional[str] = Field(default=None, description="Alternative API endpoint")
    request_timeout: float = Field(default=30.0, gt=0.0, description="Request timeout in seconds")
    tts_model: str = Field(default="tts-1-hd")
    tts_speed: float = Field(default=0.9, ge=0.25, le=4.0)
    stt_model: str = Field(default="whisper-1")
    stt_temperature: float = Field(default=0.1, ge=0.0, le=1.0)
    chat_model: str = Field(default="gpt-4")
    chat_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    chat_max_tokens: int = Field(default=500, ge=16, le=4096)

class LoggingConfig(BaseModel):
    """Logging settings."""
    level: str = Field(default="INFO", description="Log level")
    file_enabled: bool = Field(default=True, description="Enable file logging")
    console_enabled: bool = Field(default=True, description="Enable console logging")
    file_path: str = Field(default="logs/medvoice.log", description="Log file path")
    max_file_size: int = Field(default=2 * 1024 * 1024, description="Maximum log file size")
    backup_count: int = Field(default=5, ge=1, le=20, description="Number of backup log files")

class MedVoiceConfig(BaseSettings):
    """Root MedVoice configuration."""

    app_name: str = Field(default="MedVoice")
    version: str = Field(default="1.0.0")
    environment: ConfigEnvironment = Field(default=ConfigEnvironment.DEVELOPMENT)
    debug: bool = Field(default=False)

    voice_ui: VoiceUIConfig = Field(default_factory=VoiceUIConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    cloud: CloudConfig = Field(default_factory=CloudConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        validate_default=True,
        extra='ignore',
    )

# -------------------------------
# Configuration Loader
# -------------------------------

class ConfigLoader:
    """
    Configuration loader merging files, environment overrides and env variables.

    Order of precedence (last wins): base file, environment file, MEDVOICE_* variables.
    """

    def __init__(
        self,
        config_paths: Optional[List[Union[str, Path]]] = None,
        environment: Optional[Union[str, ConfigEnvironment]] = None,
        enable_env_vars: bool = True,
    ):
        self.config_paths = list(config_paths or DEFAULT_CONFIG_PATHS)
        self.environment = self._parse_environment(environment)
        self.enable_env_vars = enable_env_vars
        self._loaded_files: List[str] = []

        logger.debug(f"ConfigLoader initialized for environment: {self.environment.value}")

    def _parse_environment(self, env: Optional[Union[str, ConfigEnvironment]]) -> ConfigEnvironment:
        if env is None:
            env = os.getenv('MEDVOICE_ENV', os.getenv('ENV', 'development'))
        if isinstance(env, ConfigEnvironment):
            return env
        try:
            return ConfigEnvironment(str(env).lower())
        except ValueError:
            logger.warning(f"Unknown environment '{env}', defaulting to development")
            return ConfigEnvironment.DEVELOPMENT

    @property
    def loaded_files(self) -> List[str]:
        return list(self._loaded_files)

    def load_config(self) -> MedVoiceConfig:
        """
        Load and validate configuration from all sources.

        Raises:
            ConfigLoadError: a config file exists but cannot be parsed
            ConfigValidationError: merged values violate the schema
        """
        self._loaded_files = []
        base_config = self._load_first(self.config_paths)
        env_config = self._load_first(DEFAULT_ENV_CONFIG_PATHS.get(self.environment, []))
        merged = self._merge_configs(base_config, env_config)
        merged.setdefault('environment', self.environment.value)

        if self.enable_env_vars:
            merged = self._apply_env_vars(merged)

        config = self._validate_config(merged)
        logger.info(f"Configuration loaded from {len(self._loaded_files)} file(s)")
        return config

    def _load_first(self, paths: List[Union[str, Path]]) -> Dict[str, Any]:
        """Load the first existing file in ``paths``."""
        for config_path in paths:
            path = Path(config_path)
            if path.exists():
                data = self._load_config_file(path)
                self._loaded_files.append(str(path))
                logger.debug(f"Loaded config from: {path}")
                return data
        return {}

    def _load_config_file(self, file_path: Path) -> Dict[str, Any]:
        file_format = self._detect_format(file_path)
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                content = f.read()
            if file_format == ConfigFormat.JSON:
                data = json.loads(content)
            else:
                data = yaml.safe_load(content)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            logger.error(f"Failed to parse config file {file_path}: {e}")
            raise ConfigLoadError(f"Failed to parse config file {file_path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigLoadError(f"Config file {file_path} must contain a mapping")
        return data

    def _detect_format(self, file_path: Path) -> ConfigFormat:
        return ConfigFormat.JSON if file_path.suffix.lower() == '.json' else ConfigFormat.YAML

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge configuration dictionaries."""
        merged = dict(base)
        for key, value in (override or {}).items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = self._merge_configs(merged[key], value)
            else:
                merged[key] = value
        return merged

    def _apply_env_vars(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply MEDVOICE_* overrides; ``__`` separates nested keys."""
        env_overrides: Dict[str, Any] = {}
        for key, value in os.environ.items():
            if not key.upper().startswith(ENV_PREFIX) or key.upper() == 'MEDVOICE_ENV':
                continue
            config_key = key[len(ENV_PREFIX):].lower()
            keys = config_key.split('__')
            self._set_nested_value(env_overrides, keys, self._parse_env_value(value))
        return self._merge_configs(config, env_overrides)

    def _set_nested_value(self, config: Dict[str, Any], keys: List[str], value: Any):
        current = config
        for key in keys[:-1]:
            current = current.setdefault(key, {})
        current[keys[-1]] = value

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable value to appropriate type."""
        lowered = value.lower()
        if lowered in ('true', 'yes', 'on'):
            return True
        if lowered in ('false', 'no', 'off'):
            return False

        try:
            return float(value) if '.' in value else int(value)
        except ValueError:
            pass

        if value.startswith(('[', '{')):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value

    def _validate_config(self, config_data: Dict[str, Any]) -> MedVoiceConfig:
        try:
            return MedVoiceConfig(**config_data)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ConfigValidationError(f"Invalid configuration: {e}") from e

    def save_config(self, config: MedVoiceConfig, file_path: Optional[Path] = None) -> Path:
        """Write configuration as YAML (or JSON by extension)."""
        file_path = Path(file_path or self.config_paths[0])
        config_dict = config.model_dump(mode='json')
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, 'w', encoding='utf-8') as f:
            if self._detect_format(file_path) == ConfigFormat.JSON:
                json.dump(config_dict, f, indent=2, ensure_ascii=False)
            else:
                yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        logger.info(f"Configuration saved to: {file_path}")
        return file_path

# -------------------------------
# Convenience Functions
# -------------------------------

def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    environment: Optional[Union[str, ConfigEnvironment]] = None,
) -> MedVoiceConfig:
    """Load MedVoice configuration from files and the environment."""
    return ConfigLoader(config_paths=config_paths, environment=environment).load_config()

# -------------------------------
# Global Configuration Instance
# -------------------------------

_global_config: Optional[MedVoiceConfig] = None

def get_config(force_reload: bool = False) -> MedVoiceConfig:
    """Get global configuration instance."""
    global _global_config
    if _global_config is None or force_reload:
        _global_config = load_config()
    return _global_config

def reload_config() -> MedVoiceConfig:
    return get_config(force_reload=True)

__all__ = [
    "ConfigEnvironment", "ConfigLoader", "MedVoiceConfig", "VoiceUIConfig", "SynthesisConfig",
    "CaptureConfig", "CloudConfig", "LoggingConfig", "ConfigError", "ConfigLoadError",
    "ConfigValidationError", "load_config", "get_config", "reload_config",
]

if __name__ == "__main__":
    config = load_config()
    print(f"App: {config.app_name} {config.version} ({config.environment.value})")
    print(f"Language: {config.voice_ui.default_language}")
    print(f"Synthesis: {config.synthesis.backend}  Capture: {config.capture.backend}")
