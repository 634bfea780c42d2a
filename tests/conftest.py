import os
import sys
import socket
import pytest

# 프로젝트 루트를 path에 추가
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from corsgate.cors import CORSEngine, create_engine_config

# 테스트가 건드릴 수 있는 환경변수 (config 로딩 격리용)
_CONFIG_ENV = (
    "ALLOWED_DOMAINS", "ALLOWED_HEADERS", "ALLOWED_METHODS", "CORS_MAX_AGE",
    "HEALTH_PATH", "UPSTREAM_HOST", "UPSTREAM_PORT", "UPSTREAM_SCHEME",
    "UPSTREAM_TIMEOUT", "CLIENT_MAX_BODY_SIZE", "LISTEN_HOST", "LISTEN_PORT",
    "LOG_LEVEL", "LOG_FORMAT", "LOG_FILE", "LOG_MAX_BYTES", "LOG_BACKUP_COUNT",
    "CORSGATE_CONFIG",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """설정 관련 환경변수 제거 + 존재하지 않는 config 파일 경로"""
    for name in _CONFIG_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CORSGATE_CONFIG", str(tmp_path / "absent.json"))
    return monkeypatch


@pytest.fixture
def engine():
    """'*.example.com,localhost' 허용 엔진 (기본 메서드/헤더)"""
    return CORSEngine(create_engine_config("*.example.com,localhost"))


def get_free_port():
    """사용 가능한 포트 번호 반환"""
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
