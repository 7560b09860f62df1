#!/usr/bin/env python3
"""
AI Outbound Call Orchestrator アプリケーションエントリーポイント

このモジュールはアプリケーションのメインエントリーポイントです。
.env ファイルと環境変数から設定を読み込み、検証し、
Flask 開発サーバーを起動します。

Usage:
    python main.py

Environment Variables (Required):
    - VONAGE_APPLICATION_ID: Vonage アプリケーション ID
    - VONAGE_PRIVATE_KEY_PATH: Vonage 秘密鍵ファイルパス
    - VONAGE_FROM_NUMBER: 発信者番号
    - WEBHOOK_BASE_URL: Webhook のベース URL

Environment Variables (Optional):
    - OPENAI_API_KEY: OpenAI API キー (未設定の場合は定型文で応答)
    - ELEVENLABS_API_KEY / ELEVENLABS_VOICE_ID: 音声合成 (未設定の場合は Vonage の音声)
    - DATABASE_PATH: SQLite ファイルパス (デフォルト: calls.db)
    - DIAL_TIMEOUT_SECONDS: 接続待ちタイムアウト（秒） (デフォルト: 120)
    - LOG_LEVEL: ログレベル (デフォルト: INFO)
    - HOST: サーバーホスト (デフォルト: 0.0.0.0)
    - PORT: サーバーポート (デフォルト: 5000)
    - DEBUG: デバッグモード (デフォルト: False)
"""

import atexit
import os
import sys

from dotenv import load_dotenv

from autocaller.config import Config, ConfigurationError
from autocaller.app import create_app


def main() -> int:
    """
    アプリケーションのメインエントリーポイント

    Returns:
        int: 終了コード (0: 正常終了, 1: エラー終了)
    """
    # .envファイルを読み込み
    load_dotenv()

    try:
        print("設定を読み込んでいます...")
        config = Config.from_env()
        print("設定の読み込みが完了しました。")

        print("アプリケーションを初期化しています...")
        app = create_app(config)
        # プロセス終了時に予約済みのタイムアウトチェックを取り消す
        atexit.register(app.config["TIMEOUT_MONITOR"].shutdown)
        print("アプリケーションの初期化が完了しました。")

        host = os.environ.get("HOST", "0.0.0.0")
        port = int(os.environ.get("PORT", "5000"))
        debug = os.environ.get("DEBUG", "").lower() in ("true", "1", "yes")

        print(f"サーバーを起動しています... (host={host}, port={port}, debug={debug})")
        print(f"Webhook URL: {config.webhook_base_url}")
        print("サーバーを停止するには Ctrl+C を押してください。")

        # SSE 接続と Webhook を並行して処理するためスレッドを有効にする
        app.run(host=host, port=port, debug=debug, threaded=True)

        return 0

    except ConfigurationError as e:
        print(f"\n[エラー] 設定エラーが発生しました:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        print("\n必要な環境変数を設定してから再度実行してください。", file=sys.stderr)
        print("\n必須の環境変数:", file=sys.stderr)
        print("  - VONAGE_APPLICATION_ID: Vonage アプリケーション ID", file=sys.stderr)
        print("  - VONAGE_PRIVATE_KEY_PATH: Vonage 秘密鍵ファイルパス", file=sys.stderr)
        print("  - VONAGE_FROM_NUMBER: 発信者番号", file=sys.stderr)
        print("  - WEBHOOK_BASE_URL: Webhook のベース URL", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\nサーバーを停止しました。")
        return 0

    except Exception as e:
        print(f"\n[エラー] 予期しないエラーが発生しました:", file=sys.stderr)
        print(f"  {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
