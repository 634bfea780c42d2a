"""
corsgate 중앙 집중식 설정 모듈

프록시 설정값을 단일 불변 객체로 통합합니다.
우선순위: 환경변수 > config.json > 기본값

필수값(ALLOWED_DOMAINS, UPSTREAM_HOST)이 없거나 값이 잘못되면 ConfigError를
발생시켜 트래픽을 받기 전에 프로세스를 중단합니다.

사용법:
    from config import get_config
    cfg = get_config()
    print(cfg.upstream_port)  # 80
"""

import os
import json
from dataclasses import dataclass
from typing import Optional

from corsgate.errors import ConfigError


@dataclass(frozen=True)
class Config:
    """중앙 집중식 설정 (불변 객체)"""

    # CORS 정책
    allowed_domains: str = ""
    allowed_headers: str = ""          # 기본 헤더 목록에 추가
    allowed_methods: str = ""          # 비어 있으면 기본 메서드 목록
    cors_max_age: int = 86400
    health_path: str = "/cors/health"

    # 업스트림 (Forwarder 전용)
    upstream_host: str = ""
    upstream_port: int = 80
    upstream_scheme: str = "http"
    upstream_timeout: float = 60.0
    client_max_body_size: int = 1_048_576   # 1MB, 0이면 제한 없음

    # 리스너
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080

    # 로깅
    log_level: str = "INFO"
    log_format: str = "text"           # "text" | "json"
    log_file: str = ""                 # 비어 있으면 stdout만
    log_max_bytes: int = 10_485_760    # 10MB
    log_backup_count: int = 5

    @property
    def upstream_base_url(self) -> str:
        host = self.upstream_host
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        return f"{self.upstream_scheme}://{host}:{self.upstream_port}"


# 필수 설정 (필드명 -> 환경변수명)
_REQUIRED = {
    "allowed_domains": "ALLOWED_DOMAINS",
    "upstream_host": "UPSTREAM_HOST",
}


# 환경변수 매핑 (ENV_NAME -> (field_name, type_converter))
_ENV_MAP = {
    "ALLOWED_DOMAINS": ("allowed_domains", str),
    "ALLOWED_HEADERS": ("allowed_headers", str),
    "ALLOWED_METHODS": ("allowed_methods", str),
    "CORS_MAX_AGE": ("cors_max_age", int),
    "HEALTH_PATH": ("health_path", str),
    "UPSTREAM_HOST": ("upstream_host", str),
    "UPSTREAM_PORT": ("upstream_port", int),
    "UPSTREAM_SCHEME": ("upstream_scheme", str),
    "UPSTREAM_TIMEOUT": ("upstream_timeout", float),
    "CLIENT_MAX_BODY_SIZE": ("client_max_body_size", int),
    "LISTEN_HOST": ("listen_host", str),
    "LISTEN_PORT": ("listen_port", int),
    "LOG_LEVEL": ("log_level", str),
    "LOG_FORMAT": ("log_format", str),
    "LOG_FILE": ("log_file", str),
    "LOG_MAX_BYTES": ("log_max_bytes", int),
    "LOG_BACKUP_COUNT": ("log_backup_count", int),
}


# 설정 필드 범위 제한
_FIELD_BOUNDS = {
    "cors_max_age": (0, 86400),
    "upstream_timeout": (0.1, 3600.0),
    "client_max_body_size": (0, 2_147_483_647),
    "log_backup_count": (0, 100),
}

# 범위를 벗어나면 보정하지 않고 거부하는 포트 필드
_PORT_FIELDS = ("upstream_port", "listen_port")


def _clamp(field_name, value):
    """설정값의 범위를 제한"""
    if field_name in _FIELD_BOUNDS:
        lo, hi = _FIELD_BOUNDS[field_name]
        return type(value)(max(lo, min(hi, value)))
    return value


def _convert(env_name, field_name, converter, raw):
    """타입 변환. 실패 시 ConfigError (조용히 기본값으로 떨어지지 않음)"""
    if isinstance(raw, str):
        raw = raw.strip()
    try:
        value = converter(raw)
    except (ValueError, TypeError):
        raise ConfigError(f"{env_name} has an invalid value: {raw!r}") from None
    if field_name in _PORT_FIELDS and not 1 <= value <= 65535:
        raise ConfigError(f"{env_name} must be between 1 and 65535, got {value}")
    return _clamp(field_name, value)


def _load_config_file(path: str = "config.json") -> dict:
    """config.json 로드 (없으면 빈 dict 반환)"""
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(f"config file {path} could not be read: {e}") from None
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    return data


def _validate(cfg: Config) -> None:
    """필수값 및 값 조합 검증"""
    for field_name, env_name in _REQUIRED.items():
        if not getattr(cfg, field_name).strip():
            raise ConfigError(f"{env_name} environment variable is required")
    if cfg.upstream_scheme not in ("http", "https"):
        raise ConfigError(
            f"UPSTREAM_SCHEME must be 'http' or 'https', got {cfg.upstream_scheme!r}"
        )
    if cfg.log_format not in ("text", "json"):
        raise ConfigError(f"LOG_FORMAT must be 'text' or 'json', got {cfg.log_format!r}")


def default_config_path() -> str:
    """CORSGATE_CONFIG 환경변수 또는 ./config.json"""
    return os.environ.get("CORSGATE_CONFIG", "config.json")


def load_config(config_path: Optional[str] = None) -> Config:
    """설정 로드 (환경변수 > config.json > 기본값)

    Raises:
        ConfigError: 필수값 누락, 변환 실패, 허용되지 않는 값
    """
    if config_path is None:
        config_path = default_config_path()
    file_config = _load_config_file(config_path)
    overrides = {}

    for env_name, (field_name, converter) in _ENV_MAP.items():
        # 1. 환경변수 확인
        env_val = os.environ.get(env_name)
        if env_val is not None:
            overrides[field_name] = _convert(env_name, field_name, converter, env_val)
            continue

        # 2. config.json 확인 (필드명 또는 환경변수명 키 모두 허용)
        for key in (field_name, env_name):
            if key in file_config:
                overrides[field_name] = _convert(
                    env_name, field_name, converter, file_config[key]
                )
                break

    if "upstream_scheme" in overrides:
        overrides["upstream_scheme"] = overrides["upstream_scheme"].lower()
    if "log_format" in overrides:
        overrides["log_format"] = overrides["log_format"].lower()

    cfg = Config(**overrides)
    _validate(cfg)
    return cfg


# 싱글턴 캐시
_cached_config: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """설정 싱글턴 반환 (최초 호출 시 로드)"""
    global _cached_config
    if _cached_config is None:
        _cached_config = load_config(config_path)
    return _cached_config


def reset_config() -> None:
    """설정 캐시 초기화 (테스트용 및 리로드용)"""
    global _cached_config
    _cached_config = None
