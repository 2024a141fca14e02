"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
before create_all runs.
"""

from econ_router.models.ledger import BudgetDebitRecord

__all__ = ["BudgetDebitRecord"]
