# common/config.py
from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = "config/config.yaml"

IMAGE_PROMPT = (
    "You're experiencing what I'm seeing. "
    "Describe or comment on this moment from your point of view."
)
FRAMES_PROMPT = (
    "Here are several frames from a video. "
    "Please summarize what is happening in this sequence."
)


class RuntimeSettings(BaseModel):
    redis_url: Optional[str] = None          # status events are off when unset
    stream_status: str = "memories.status"
    log_level: str = "INFO"
    work_dir: str = "outputs"


class SamplerSettings(BaseModel):
    frame_count: int = Field(3, ge=1)
    max_frames: int = Field(10, ge=1)
    ffmpeg_bin: str = "ffmpeg"


class EncoderSettings(BaseModel):
    target_width: int = Field(512, gt=0)
    quality: int = Field(70, ge=1, le=95)


class InferenceSettings(BaseModel):
    api_key: Optional[str] = None
    api_url: str = "https://api.openai.com/v1/chat/completions"
    model: str = "gpt-4o"
    max_tokens: int = 300
    timeout_sec: int = 60
    source: str = "OpenAI"
    image_prompt: str = IMAGE_PROMPT
    frames_prompt: str = FRAMES_PROMPT


class NarratorSettings(BaseModel):
    engine: str = "auto"     # auto | espeak-ng | espeak | say | log
    rate: float = Field(1.0, gt=0)
    voice: Optional[str] = None


class StorageSettings(BaseModel):
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    bucket: str = "her-bucket"
    table: str = "memories"
    timeout_sec: int = 30


class TimelineSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 9090
    default_limit: int = 50


class Settings(BaseModel):
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    sampler: SamplerSettings = Field(default_factory=SamplerSettings)
    encoder: EncoderSettings = Field(default_factory=EncoderSettings)
    inference: InferenceSettings = Field(default_factory=InferenceSettings)
    narrator: NarratorSettings = Field(default_factory=NarratorSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    timeline: TimelineSettings = Field(default_factory=TimelineSettings)


# env var -> (section, key)
_ENV_OVERRIDES = {
    "OPENAI_API_KEY": ("inference", "api_key"),
    "SUPABASE_URL": ("storage", "supabase_url"),
    "SUPABASE_ANON_KEY": ("storage", "supabase_key"),
    "REDIS_URL": ("runtime", "redis_url"),
    "LOG_LEVEL": ("runtime", "log_level"),
}


def _apply_env(cfg: Dict[str, Any], env: Dict[str, str]) -> Dict[str, Any]:
    for var, (section, key) in _ENV_OVERRIDES.items():
        val = env.get(var)
        if val:
            cfg.setdefault(section, {})
            if cfg[section] is None:
                cfg[section] = {}
            cfg[section][key] = val
    return cfg


def load_settings(config_path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Settings:
    """Read YAML config (missing file means defaults), then layer environment secrets on top."""
    path = Path(config_path or os.getenv("HER_CONFIG", DEFAULT_CONFIG_PATH))
    cfg: Dict[str, Any] = {}
    if path.exists():
        cfg = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = _apply_env(cfg, dict(os.environ) if env is None else env)
    return Settings.model_validate(cfg)
