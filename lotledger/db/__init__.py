from lotledger.db.base import Base, init_models

__all__ = ["Base", "init_models"]
