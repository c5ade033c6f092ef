from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from .connection_manager import (
    DEFAULT_DEVICE_NAME,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_SCAN_TIMEOUT,
)
from .service import DEFAULT_METRICS_PORT, BridgeConfig, run

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="acinfinity-bridge",
        description="AC Infinity コントローラから BLE 通知で温湿度を受信し、VPD とともに Prometheus メトリクスとして公開します。",
    )
    parser.add_argument(
        "--device-name",
        default=DEFAULT_DEVICE_NAME,
        help="スキャンで完全一致させるアドバタイズ名（既定: ACI-E）",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=DEFAULT_SCAN_TIMEOUT,
        help="1 回のスキャンのタイムアウト秒数",
    )
    parser.add_argument(
        "--reconnect-delay",
        type=float,
        default=DEFAULT_RECONNECT_DELAY,
        help="再接続までの待機秒数",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help="接続状態を確認する間隔（秒）",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=DEFAULT_METRICS_PORT,
        help="Prometheus エンドポイントのポート（0 で無効、既定: 9464）",
    )
    parser.add_argument(
        "--metrics-addr",
        default="0.0.0.0",
        help="Prometheus エンドポイントのバインドアドレス",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="ログレベル（既定: INFO）",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="ログをファイルにも出力（既定: 標準エラーのみ）",
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="テスト用のシミュレートされたデバイスを使用（BLEデバイス不要）",
    )

    # 動作モード（デフォルトはヘッドレスのブリッジ）
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--dashboard",
        action="store_true",
        help="ステータスページを Web で表示",
    )
    mode.add_argument(
        "--diagnose",
        action="store_true",
        help="BLE 診断（スキャンと GATT 一覧）を実行して終了",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8050,
        help="ステータスページのポート（既定: 8050）",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> BridgeConfig:
    return BridgeConfig(
        device_name=args.device_name,
        scan_timeout=args.scan_timeout,
        reconnect_delay=args.reconnect_delay,
        poll_interval=args.poll_interval,
        metrics_port=args.metrics_port,
        metrics_addr=args.metrics_addr,
        mock=args.mock,
    )


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            # ファイルハンドラに失敗しても実行は継続（stderrにだけ出す）
            print(f"log file unavailable: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,  # 他のbasicConfigに影響されないよう強制
    )


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file)
    config = config_from_args(args)

    if args.diagnose:
        from .diagnostics import run_diagnostics
        from .service import Bridge

        bridge = Bridge(config)
        try:
            ok = asyncio.run(
                run_diagnostics(
                    bridge.adapter,
                    config.device_name,
                    config.scan_timeout,
                    check_host=not config.mock,
                )
            )
        except KeyboardInterrupt:
            logger.info("\n👋 Diagnostics cancelled by user")
            raise SystemExit(130)
        raise SystemExit(0 if ok else 1)

    if args.dashboard:
        from .dashboard import create_app
        from .service import Bridge

        logger.info("🔧 AC Infinity Bridge - Status page")
        logger.info("🔍 Open http://localhost:%d in your browser", args.port)
        app = create_app(Bridge(config))
        try:
            app.run(host="0.0.0.0", port=args.port)
        except KeyboardInterrupt:
            logger.info("\n🛑 Shutting down status page...")
        raise SystemExit(0)

    raise SystemExit(run(config))
