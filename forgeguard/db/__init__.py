"""
Database Package
================

Exports key database components.
"""

from forgeguard.db.models import Base, StateDocument, StreamRecord
from forgeguard.db.connection import DB_FILENAME, create_store_engine, get_session_maker
