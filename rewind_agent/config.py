"""
config.py - Runtime configuration

Layering (later wins):

    defaults  ->  <home>/config.json  ->  .env / environment variables

<home> is ~/.config/rewind-agent unless REWIND_HOME points elsewhere.
Everything the runtime persists (checkpoints, shadow repos, agents, sessions,
todos) lives under <home>; plans and notes live under <workdir>/.rewind.
"""

import json
import logging
import os
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_MAX_TOKENS = 8000
DEFAULT_TEMPERATURE = 0.1
DEFAULT_CONTEXT_LENGTH = 131072

# Compress once cumulative tokens pass this share of the context window
AUTO_COMPRESS_RATIO = 0.75
COMPRESSION_MAX_TOKENS = 1500

MAX_SUBAGENT_ITERATIONS = 50
LOOP_DETECTION_THRESHOLD = 3
AUTO_CHECKPOINT_RETENTION = 10


class OperationMode(str, Enum):
    PLAN = "plan"
    BUILD = "build"


class ExecutionMode(str, Enum):
    ASK = "ask"
    YOLO = "yolo"


@dataclass
class Skill:
    """A custom tool backed by a script. Arguments arrive as $SKILL_ARGS (JSON)."""
    name: str
    description: str
    command: str
    parameters: dict = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class Config:
    api_key: str | None = None
    base_url: str | None = None
    model: str = DEFAULT_MODEL
    mini_model: str | None = None
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    context_length: int = DEFAULT_CONTEXT_LENGTH
    auto_compress: bool = True
    operation_mode: OperationMode = OperationMode.BUILD
    execution_mode: ExecutionMode = ExecutionMode.ASK
    subagents_enabled: bool = True
    max_subagent_iterations: int = MAX_SUBAGENT_ITERATIONS
    loop_detection_threshold: int = LOOP_DETECTION_THRESHOLD
    strict_checkpoints: bool = False
    checkpoint_retention: int = AUTO_CHECKPOINT_RETENTION
    mcp_servers: dict = field(default_factory=dict)
    skills: list = field(default_factory=list)
    home: Path = field(default_factory=lambda: default_home())
    workdir: Path = field(default_factory=Path.cwd)

    @property
    def compress_threshold(self) -> int:
        return int(self.context_length * AUTO_COMPRESS_RATIO)

    @property
    def config_path(self) -> Path:
        return self.home / "config.json"


def default_home() -> Path:
    if os.getenv("REWIND_HOME"):
        return Path(os.environ["REWIND_HOME"]).expanduser()
    return Path.home() / ".config" / "rewind-agent"


def _to_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    v = value.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def _to_int(value: str | None, default: int) -> int:
    try:
        n = int(value) if value is not None else default
    except ValueError:
        return default
    return n if n > 0 else default


def _apply_file(config: Config, data: dict):
    for key in ("model", "mini_model", "base_url", "temperature", "max_tokens",
                "context_length", "auto_compress", "subagents_enabled",
                "max_subagent_iterations", "loop_detection_threshold",
                "strict_checkpoints", "checkpoint_retention"):
        if key in data:
            setattr(config, key, data[key])
    if data.get("operation_mode"):
        config.operation_mode = OperationMode(data["operation_mode"])
    if data.get("execution_mode"):
        config.execution_mode = ExecutionMode(data["execution_mode"])
    if isinstance(data.get("mcp_servers"), dict):
        config.mcp_servers = dict(data["mcp_servers"])
    for item in data.get("skills", []):
        try:
            config.skills.append(Skill(**item))
        except TypeError as e:
            logger.warning("Skipping malformed skill %r: %s", item, e)


def _apply_env(config: Config):
    if os.getenv("ANTHROPIC_BASE_URL"):
        os.environ.pop("ANTHROPIC_AUTH_TOKEN", None)
        config.base_url = os.environ["ANTHROPIC_BASE_URL"]
    config.api_key = os.getenv("ANTHROPIC_API_KEY", config.api_key)
    config.model = os.getenv("MODEL_ID", config.model)
    config.mini_model = os.getenv("MINI_MODEL_ID", config.mini_model)
    if os.getenv("TEMPERATURE"):
        try:
            config.temperature = float(os.environ["TEMPERATURE"])
        except ValueError:
            logger.warning("Ignoring TEMPERATURE=%r", os.environ["TEMPERATURE"])
    config.max_tokens = _to_int(os.getenv("MAX_TOKENS"), config.max_tokens)
    config.context_length = _to_int(os.getenv("MODEL_CONTEXT_LENGTH"), config.context_length)
    config.auto_compress = _to_bool(os.getenv("AUTO_COMPRESS"), config.auto_compress)
    config.subagents_enabled = _to_bool(os.getenv("SUBAGENTS_ENABLED"), config.subagents_enabled)
    config.max_subagent_iterations = _to_int(os.getenv("MAX_SUBAGENT_ITERATIONS"),
                                             config.max_subagent_iterations)
    config.loop_detection_threshold = _to_int(os.getenv("LOOP_DETECTION_THRESHOLD"),
                                              config.loop_detection_threshold)
    config.strict_checkpoints = _to_bool(os.getenv("STRICT_CHECKPOINTS"), config.strict_checkpoints)
    mode = os.getenv("EXECUTION_MODE")
    if mode:
        config.execution_mode = ExecutionMode.YOLO if mode.lower() == "yolo" else ExecutionMode.ASK
    mode = os.getenv("OPERATION_MODE")
    if mode:
        config.operation_mode = OperationMode.PLAN if mode.lower() == "plan" else OperationMode.BUILD


def load_config(home: Path = None, workdir: Path = None, use_dotenv: bool = True) -> Config:
    if use_dotenv:
        load_dotenv(override=True)
    config = Config(home=home or default_home(), workdir=workdir or Path.cwd())
    path = config.config_path
    if path.exists():
        try:
            _apply_file(config, json.loads(path.read_text()))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Failed to parse %s: %s", path, e)
    _apply_env(config)
    return config


def save_config(config: Config):
    """Persist non-secret settings. The API key stays in the environment."""
    data = asdict(config)
    for key in ("api_key", "home", "workdir"):
        data.pop(key, None)
    data["operation_mode"] = config.operation_mode.value
    data["execution_mode"] = config.execution_mode.value
    config.home.mkdir(parents=True, exist_ok=True)
    write_json_atomic(config.config_path, data)


def write_json_atomic(path: Path, data) -> Path:
    """Whole-file write: temp file in the same directory, then os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    tmp.write_text(json.dumps(data, indent=2, default=str))
    os.replace(tmp, path)
    return path
