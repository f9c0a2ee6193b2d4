"""
SystemSetting model: small persisted key-value state.
"""

from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.models.base import Base


class SystemSetting(Base):
    """
    Key-value store with JSON values.

    Known keys:
    - ledger_tokens: current OAuth token set for the external ledger
    - last_sweep: summary of the most recent reconciliation sweep
    """

    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
    )
    value: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        comment="JSON value - use {'v': ...} wrapper for simple values",
    )

    def __repr__(self) -> str:
        return f"<SystemSetting(key='{self.key}')>"

    def get_value(self) -> Any:
        if isinstance(self.value, dict) and "v" in self.value:
            return self.value["v"]
        return self.value

    def set_value(self, val: Any) -> None:
        self.value = {"v": val}
