from __future__ import annotations

import logging
from typing import Any, MutableMapping


class InstanceFieldsFilter(logging.Filter):
    """Fill in ``category``/``instance_id`` for records that did not come
    through an :class:`InstanceLogAdapter`, so the format string never fails."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "category"):
            record.category = "-"
        if not hasattr(record, "instance_id"):
            record.instance_id = "-"
        return True


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(category)s@%(instance_id)s | %(message)s",
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(InstanceFieldsFilter())
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class InstanceLogAdapter(logging.LoggerAdapter):
    """Tags every record with a category and the owning bot instance.

    Extra metadata passed as ``metadata=...`` is attached to the record and
    appended to the message so it survives plain-text handlers.
    """

    def __init__(self, logger: logging.Logger, instance_id: str, category: str) -> None:
        super().__init__(logger, {"instance_id": instance_id, "category": category})

    def with_category(self, category: str) -> "InstanceLogAdapter":
        return InstanceLogAdapter(self.logger, self.extra["instance_id"], category)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        metadata = kwargs.pop("metadata", None)
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        if metadata:
            extra["metadata"] = metadata
            msg = f"{msg} {metadata}"
        kwargs["extra"] = extra
        return msg, kwargs
