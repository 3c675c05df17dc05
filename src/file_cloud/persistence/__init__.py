from .db_models import Base, CloudAccountRow
from .sql_store import SqlAccountStore, create_db_engine

__all__ = ["Base", "CloudAccountRow", "SqlAccountStore", "create_db_engine"]
