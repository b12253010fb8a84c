# cryptotax/models/__init__.py

"""
Centralizes model imports so Base.metadata knows every table as soon as
'cryptotax.models' is imported.
"""

from cryptotax.database import Base

# Models from user.py
from .user import User

# Models from source.py
from .source import Source

# Models from transaction.py
from .transaction import Transaction, LotSelection
