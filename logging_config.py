"""
corsgate 구조화된 로깅 설정

text/JSON 포맷 지원, 로그 회전, 비밀 자동 마스킹.
액세스 로그에 실리는 Bearer 토큰, URL 자격증명, 토큰성 쿼리 파라미터를 가립니다.

사용법:
    from logging_config import setup_logging, get_logger
    setup_logging(level="INFO", log_format="text")
    logger = get_logger("proxy")
    logger.info("요청 처리 완료")
"""

import os
import re
import json
import logging
import logging.handlers
from datetime import datetime
from typing import Optional


ROOT_LOGGER = "corsgate"

# 비밀 마스킹 패턴
_BEARER_RE = re.compile(r"(?i)\b(bearer|basic)\s+[a-zA-Z0-9._~+/=-]{8,}")
_URL_CREDENTIALS_RE = re.compile(r"(://)[^/\s:@]+:[^/\s@]+@")
_QUERY_SECRET_RE = re.compile(
    r"(?i)([?&](?:access_token|token|api_key|apikey|key|password|secret|sig|signature)=)[^&\s\"]+"
)

_EXTRA_FIELDS = ("cors_reason", "cors_origin", "upstream_status")


def _mask_secrets(text: str) -> str:
    """토큰, 자격증명 등 비밀값 마스킹"""
    text = _BEARER_RE.sub(lambda m: f"{m.group(1)} [REDACTED]", str(text))
    text = _URL_CREDENTIALS_RE.sub(r"\1[REDACTED]@", text)
    return _QUERY_SECRET_RE.sub(r"\1[REDACTED]", text)


class SecretMaskingFilter(logging.Filter):
    """로그 레코드에서 비밀값 자동 마스킹"""
    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = _mask_secrets(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(
                a if isinstance(a, (int, float)) or a is None else _mask_secrets(str(a))
                for a in record.args
            )
        return True


class JSONFormatter(logging.Formatter):
    """JSON 구조화 로그 포매터

    거부/업스트림 실패 로그의 extra 필드(cors_reason, cors_origin,
    upstream_status)는 최상위 키로 함께 출력합니다.
    """

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": _mask_secrets(record.getMessage()),
        }
        for key in _EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value if isinstance(value, int) else _mask_secrets(value)
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """텍스트 로그 포매터"""

    def __init__(self):
        super().__init__(
            fmt="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


_initialized = False


def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    log_file: Optional[str] = None,
    max_bytes: int = 10_485_760,
    backup_count: int = 5,
) -> None:
    """전역 로깅 설정 (프로세스당 1회)

    Args:
        level: 로그 레벨 (DEBUG, INFO, WARNING, ERROR)
        log_format: 포맷 ("text" 또는 "json")
        log_file: 로그 파일 경로 (None/빈 문자열이면 stdout만)
        max_bytes: 로그 파일 최대 크기 (기본 10MB)
        backup_count: 보관할 백업 파일 수
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if log_format == "json":
        formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    secret_filter = SecretMaskingFilter()

    # 콘솔 핸들러
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(secret_filter)
    root_logger.addHandler(console_handler)

    # 파일 핸들러 (선택적)
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(secret_filter)
        root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """모듈별 로거 반환

    Args:
        name: 모듈 이름 (예: "proxy", "forwarder", "main")

    Returns:
        corsgate.{name} 로거
    """
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def reset_logging() -> None:
    """로깅 설정 초기화 (테스트용)"""
    global _initialized
    _initialized = False
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
