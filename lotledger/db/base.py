# lotledger/db/base.py
from __future__ import annotations

import importlib
import logging

from sqlalchemy.orm import DeclarativeBase, configure_mappers

log = logging.getLogger("lotledger.models")


class Base(DeclarativeBase):
    """全局唯一 ORM Base"""

    pass


_INITIALIZED: bool = False

# 显式注册顺序：create_all / alembic 依赖全部表都已挂到 Base.metadata
_MODEL_MODULES = (
    "lotledger.models.catalog_item",
    "lotledger.models.product",
    "lotledger.models.lot_entry",
    "lotledger.models.lot_movement",
    "lotledger.models.sequence_counter",
    "lotledger.models.ledger_lease",
)


def init_models(*, force: bool = False) -> None:
    """
    集中导入模型 + 固化映射。重复调用无副作用。
    """
    global _INITIALIZED
    if _INITIALIZED and not force:
        return

    for mod in _MODEL_MODULES:
        importlib.import_module(mod)

    configure_mappers()
    _INITIALIZED = True
    log.info("ORM models initialized (%d modules)", len(_MODEL_MODULES))
