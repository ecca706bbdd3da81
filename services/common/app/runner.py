"""
共通起動処理 — uvicorn でアプリケーションファクトリを起動する。

SIGINT / SIGTERM を受けると uvicorn は新規接続の受付を止め、
処理中のリクエストが終わるのを待ってから lifespan の終了処理を実行する。
"""

import uvicorn


def serve(factory: str, host: str, port: int) -> None:
    # ロギングは setup_logging で設定済みなので uvicorn には触らせない
    uvicorn.run(factory, factory=True, host=host, port=port, log_config=None)
