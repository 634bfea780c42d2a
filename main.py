#!/usr/bin/env python3
"""
corsgate 실행 진입점

설정을 검증한 뒤 CORS 프록시를 시작합니다. 설정 오류가 있으면 소켓을 열기 전에
종료 코드 1로 끝납니다.

사용법:
    ALLOWED_DOMAINS="*.example.com,localhost" UPSTREAM_HOST=backend python3 main.py
    python3 main.py --check          설정 검증만 수행
    kill -HUP <pid>                  설정 다시 읽기 (CORS 정책만 교체)
"""

import sys
import signal
import argparse
import threading
from typing import Optional

from dotenv import load_dotenv

from config import Config, get_config, reset_config
from corsgate.cors import CORSEngine, EngineHolder, create_engine_config
from corsgate.errors import ConfigError
from corsgate.forwarder import Forwarder
from corsgate.proxy_server import ProxyServer
from logging_config import setup_logging, get_logger

logger = get_logger("main")


def build_engine(cfg: Config) -> CORSEngine:
    """Config -> CORSEngine (ConfigError 전파)"""
    engine_config = create_engine_config(
        allowed_domains=cfg.allowed_domains,
        allowed_headers=cfg.allowed_headers,
        allowed_methods=cfg.allowed_methods,
        max_age=cfg.cors_max_age,
        health_path=cfg.health_path,
    )
    return CORSEngine(engine_config)


def build_forwarder(cfg: Config) -> Forwarder:
    return Forwarder(cfg.upstream_base_url, timeout=cfg.upstream_timeout)


def log_configuration(cfg: Config, engine: CORSEngine) -> None:
    """시작 시 설정 요약 출력"""
    engine_config = engine.config
    logger.info("CORS proxy configured:")
    logger.info("  Allowed domains: %s", ", ".join(engine_config.allowlist.describe()))
    logger.info("  Upstream: %s:%d", cfg.upstream_host, cfg.upstream_port)
    logger.info("  Allowed methods: %s", ", ".join(engine_config.allowed_methods))
    logger.info("  Allowed headers: %s", ", ".join(engine_config.allowed_headers))
    logger.info("  Health path: %s", engine_config.health_path)


def reload_engine(holder: EngineHolder, current: Config,
                  config_path: Optional[str] = None) -> Optional[Config]:
    """설정을 다시 읽어 엔진을 원자적으로 교체

    실패하면 기존 엔진을 유지하고 None을 반환합니다.
    업스트림/리스너 변경은 재시작해야 반영됩니다.
    """
    reset_config()
    try:
        cfg = get_config(config_path)
        engine = build_engine(cfg)
    except ConfigError as e:
        logger.error("configuration reload rejected, keeping previous policy: %s", e)
        return None

    holder.swap(engine)
    logger.info("configuration reloaded (generation %d): %s",
                holder.generation, ", ".join(engine.config.allowlist.describe()))
    if (cfg.upstream_base_url, cfg.listen_host, cfg.listen_port) != (
            current.upstream_base_url, current.listen_host, current.listen_port):
        logger.warning("upstream/listener changes require a restart to take effect")
    return cfg


def _install_signal_handlers(server: ProxyServer, holder: EngineHolder,
                             state: dict, config_path: Optional[str]) -> None:
    """SIGTERM/SIGINT: 정상 종료, SIGHUP: 설정 리로드"""

    def _shutdown(signum, frame):
        logger.info("signal %s received, shutting down", signal.Signals(signum).name)
        # serve_forever()가 도는 메인 스레드에서 shutdown()을 호출하면 교착
        threading.Thread(target=server.shutdown, name="corsgate-shutdown").start()

    def _reload(signum, frame):
        def _run():
            cfg = reload_engine(holder, state["config"], config_path)
            if cfg is not None:
                state["config"] = cfg
        threading.Thread(target=_run, name="config-reload").start()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _reload)


def main(argv=None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(
        description="corsgate: CORS-enforcing reverse proxy",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="JSON 설정 파일 경로 (기본: $CORSGATE_CONFIG 또는 config.json)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="설정 검증만 수행하고 종료",
    )
    args = parser.parse_args(argv)

    reset_config()
    try:
        cfg = get_config(args.config)
        engine = build_engine(cfg)
    except ConfigError as e:
        setup_logging(level="INFO", log_format="text")
        logger.error("ERROR: %s", e)
        return 1

    setup_logging(
        level=cfg.log_level,
        log_format=cfg.log_format,
        log_file=cfg.log_file or None,
        max_bytes=cfg.log_max_bytes,
        backup_count=cfg.log_backup_count,
    )
    log_configuration(cfg, engine)
    if args.check:
        return 0

    holder = EngineHolder(engine)
    try:
        server = ProxyServer(
            holder,
            build_forwarder(cfg),
            host=cfg.listen_host,
            port=cfg.listen_port,
            max_body_size=cfg.client_max_body_size,
        )
    except OSError as e:
        logger.error("cannot listen on %s:%d: %s", cfg.listen_host, cfg.listen_port, e)
        return 1

    state = {"config": cfg}
    _install_signal_handlers(server, holder, state, args.config)
    logger.info("listening on http://%s:%d", cfg.listen_host, server.port)
    try:
        server.serve_forever()
    finally:
        server.close()
    logger.info("stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
