"""
Configuration management

Precedence rules:
1. Credentials: environment variables only (UPSTREAM_API_KEY, SYNTHESIS_API_KEY)
2. Everything else: YAML settings file > model defaults

The settings file path comes from the caller (main.py reads LINGO_CONFIG).
A missing file means "all defaults"; a broken section falls back to that
section's defaults with a warning instead of stopping the service.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# Load .env before anything reads the environment
load_dotenv()

logger = logging.getLogger("lingo.config")

DEFAULT_SYSTEM_PROMPT = """
你是一位亲子英语启蒙老师，负责设计家庭英语亲子英语例句。
根据用户输入的主题，生成不少于10句英文例句。

输出以下JSON格式内容：
{
  "example_sentences": [
    {
      "english": "example sentence",
      "chinese": "例句的中文翻译"
    },
    ...
  ]
}
"""


# ==================== Config models ====================

class UpstreamConfig(BaseModel):
    """Language-model streaming endpoint"""
    endpoint: str = Field(default="https://api.moonshot.cn/v1/chat/completions", description="Chat-completions URL")
    model: str = Field(default="moonshot-v1-8k", description="Model name sent upstream")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="System prompt")
    json_mode: bool = Field(default=True, description="Request response_format json_object")
    connect_timeout: float = Field(default=30.0, gt=0, le=300, description="Connect timeout (seconds)")
    read_timeout: float = Field(default=120.0, gt=0, le=3600, description="Max stall between upstream reads (seconds)")
    max_undecodable_records: int = Field(default=16, ge=1, le=1000, description="Consecutive undecodable records before giving up")


class SynthesisConfig(BaseModel):
    """Text-to-speech endpoint"""
    endpoint: str = Field(default="https://api.openai.com/v1/audio/speech", description="Speech URL")
    model: str = Field(default="tts-1", description="TTS model")
    voice: str = Field(default="alloy", description="Voice name")
    response_format: str = Field(default="mp3", description="Audio container")
    timeout: float = Field(default=60.0, gt=0, le=600, description="Per-request timeout (seconds)")
    max_concurrency: int = Field(default=0, ge=0, le=256, description="Concurrent synthesis cap, 0 = unbounded")

    @field_validator("response_format")
    @classmethod
    def validate_response_format(cls, v):
        allowed = ["mp3", "opus", "aac", "flac", "wav", "pcm"]
        if v not in allowed:
            raise ValueError(f"response_format must be one of {allowed}")
        return v


class StreamConfig(BaseModel):
    """Which parsed paths reach the client and which trigger audio"""
    rendered_fields: List[str] = Field(
        default=["example_sentences/*/english", "example_sentences/*/chinese"],
        description="Path-suffix patterns forwarded to the client",
    )
    audio_trigger_field: str = Field(default="example_sentences/*/english", description="Path-suffix pattern that triggers synthesis")
    audio_field: str = Field(default="audio", description="Field name of derived audio frames")

    @field_validator("audio_field")
    @classmethod
    def validate_audio_field(cls, v):
        if not v or "/" in v:
            raise ValueError("audio_field must be a single non-empty key")
        return v


class ServerConfig(BaseModel):
    """HTTP server"""
    port: int = Field(default=3000, ge=1, le=65535, description="Listen port")
    frontend_origin: str = Field(default="", description="Allowed CORS origin")
    allow_all_origins: bool = Field(default=False, description="Allow any CORS origin")


class SecurityConfig(BaseModel):
    """Credentials (environment only)"""
    upstream_api_key: str = Field(default="", description="Bearer token for the model endpoint")
    synthesis_api_key: str = Field(default="", description="Bearer token for the speech endpoint")


class AppConfig(BaseModel):
    security: SecurityConfig
    upstream: UpstreamConfig
    synthesis: SynthesisConfig
    stream: StreamConfig
    server: ServerConfig


# ==================== Config manager ====================

class ConfigManager:
    """Loads AppConfig from environment + YAML"""

    _SECTIONS = {
        "upstream": UpstreamConfig,
        "synthesis": SynthesisConfig,
        "stream": StreamConfig,
        "server": ServerConfig,
    }

    def __init__(self, yaml_path: Optional[str] = None):
        self.yaml_path = Path(yaml_path) if yaml_path else None
        self._config: Optional[AppConfig] = None
        self.load()

    def load(self):
        """
        Build the configuration.

        1. Credentials: environment only
        2. Sections: YAML values validated by pydantic, defaults on error
        """
        yaml_data = self._load_yaml()

        security_config = SecurityConfig(
            upstream_api_key=os.getenv("UPSTREAM_API_KEY", ""),
            synthesis_api_key=os.getenv("SYNTHESIS_API_KEY", ""),
        )

        sections = {}
        for name, model in self._SECTIONS.items():
            raw = yaml_data.get(name) or {}
            try:
                sections[name] = model(**raw)
            except Exception as e:
                logger.warning(f"[CONFIG] invalid '{name}' section, using defaults: {e}")
                sections[name] = model()

        self._config = AppConfig(security=security_config, **sections)

    def _load_yaml(self) -> dict:
        """Read the settings file; missing or empty file -> {}"""
        if self.yaml_path is None or not self.yaml_path.exists():
            return {}
        try:
            with self.yaml_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"[CONFIG] could not read {self.yaml_path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return data

    def reload(self):
        """Re-read environment and file"""
        self.load()

    @property
    def config(self) -> AppConfig:
        return self._config

    # ==================== Convenience accessors ====================

    @property
    def upstream(self) -> UpstreamConfig:
        return self._config.upstream

    @property
    def synthesis(self) -> SynthesisConfig:
        return self._config.synthesis

    @property
    def stream(self) -> StreamConfig:
        return self._config.stream

    @property
    def server(self) -> ServerConfig:
        return self._config.server

    @property
    def upstream_api_key(self) -> str:
        return self._config.security.upstream_api_key

    @property
    def synthesis_api_key(self) -> str:
        return self._config.security.synthesis_api_key
