"""缓存看板 API Blueprint"""

from __future__ import annotations

from typing import Any

from flask import Blueprint, Response

from fetchkit.core.dep.cache import PopulationCache
from fetchkit.core.dep.models import PopulationRecord
from fetchkit.core.dep.registry import validate_name
from fetchkit.core.exceptions import ValidationError
from fetchkit.web.responses import bad_request, conflict, not_found, ok

cache_bp = Blueprint("cache", __name__, url_prefix="/api/cache")


def _cache() -> PopulationCache:
    from fetchkit.core.config import get_config
    return PopulationCache.from_config(get_config())


def _entry(cache: PopulationCache, record: PopulationRecord) -> dict[str, Any]:
    data = record.to_dict()
    data["locked"] = cache.is_locked(record.name)
    data["stale"] = cache.stale_fetching(record)
    return data


@cache_bp.route("", methods=["GET"])
def list_all() -> Response:
    cache = _cache()
    return ok({
        "root": str(cache.root),
        "records": [_entry(cache, r) for r in cache.list_records()],
    })


@cache_bp.route("/<name>", methods=["GET"])
def get(name: str) -> tuple[Response, int] | Response:
    try:
        validate_name(name)
    except ValidationError as e:
        return bad_request(str(e))
    cache = _cache()
    record = cache.read(name)
    if record is None:
        return not_found(f"依赖 '{name}' 的缓存记录")
    return ok({"record": _entry(cache, record)})


@cache_bp.route("/<name>", methods=["DELETE"])
def delete(name: str) -> tuple[Response, int] | Response:
    try:
        validate_name(name)
    except ValidationError as e:
        return bad_request(str(e))
    try:
        removed = _cache().invalidate(name)
    except ValidationError as e:
        return conflict(str(e))
    if not removed:
        return not_found(f"依赖 '{name}' 的缓存")
    return ok({"message": f"缓存已清除: {name}"})
