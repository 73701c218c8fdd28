"""轻量级缓存看板（基于 Flask）

提供：缓存记录列表、单个依赖记录查询、清除缓存。

启动方式: fetchkit dashboard --port 8888
"""

from __future__ import annotations

import logging

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from fetchkit.core.exceptions import FetchKitError
from fetchkit.web.blueprints.cache_bp import cache_bp

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.register_blueprint(cache_bp)


@app.errorhandler(HTTPException)
def handle_http_exception(exc):
    """将所有 HTTP 异常统一返回 JSON"""
    return jsonify(error=exc.description), exc.code


@app.errorhandler(FetchKitError)
def handle_fetchkit_error(exc):
    return jsonify(error=str(exc), code=exc.code), 500


@app.errorhandler(Exception)
def handle_generic_exception(exc):  # noqa: ARG001
    """捕获未处理异常，返回 500 JSON"""
    logger.exception("未处理的异常")
    return jsonify(error="服务器内部错误"), 500


@app.route("/api/health")
def health():
    from fetchkit import __version__
    return jsonify(status="ok", version=__version__)


def run_server(port: int = 8888, debug: bool = False, host: str = "127.0.0.1") -> None:
    logger.info("fetchkit 看板已启动: http://%s:%d", host, port)
    app.run(host=host, port=port, debug=debug)
