"""
共通設定 — 接続 URL のプレースホルダ展開

各サービスの Settings は pydantic-settings で環境変数から読む。
ここではそれに使う補助だけを提供する。
"""

import logging
import os
import re

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


def resolve_placeholders(value: str) -> str:
    """
    `${VAR}` 形式のプレースホルダを環境変数で置き換える。

    デフォルトの接続 URL には認証情報がプレースホルダで埋め込まれており、
    デプロイ環境が値を与えることを前提としている。
    解決できなかったものはそのまま残し、警告を出す。
    """
    missing: list[str] = []

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name in os.environ:
            return os.environ[name]
        missing.append(name)
        return match.group(0)

    resolved = _PLACEHOLDER.sub(_sub, value)
    if missing:
        logger.warning("Unresolved placeholders in URL: %s", ", ".join(missing))
    return resolved
