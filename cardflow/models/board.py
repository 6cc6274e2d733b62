"""
Cardflow Core
Board domain models.

Models:
    - Board: container of cards, columns, accesses and webhooks
    - BoardColumn: a triage destination on one board
    - Access: per-user board grant with involvement level
    - Entropy: auto-postpone period attached to an account or a board
"""

from cardflow.models import db, isoformat, utcnow
from cardflow.models.base import TenantModel


# ── Constants ────────────────────────────────────────────────────────────────

INVOLVEMENTS = {"access_only", "watching"}
ENTROPY_CONTAINERS = {"account", "board"}


class Board(TenantModel):
    __tablename__ = "boards"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    creator_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                           nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    columns = db.relationship(
        "BoardColumn",
        back_populates="board",
        order_by="BoardColumn.position",
        cascade="all, delete-orphan",
    )
    accesses = db.relationship("Access", back_populates="board",
                               cascade="all, delete-orphan", lazy="dynamic")

    def find_column_named(self, name: str):
        """Return the column named exactly ``name``, or None."""
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "name": self.name,
            "columns": [c.to_dict() for c in self.columns],
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Board {self.id}: {self.name}>"


class BoardColumn(TenantModel):
    __tablename__ = "board_columns"

    id = db.Column(db.Integer, primary_key=True)
    board_id = db.Column(db.Integer, db.ForeignKey("boards.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)

    board = db.relationship("Board", back_populates="columns")

    def to_dict(self):
        return {
            "id": self.id,
            "board_id": self.board_id,
            "name": self.name,
            "position": self.position,
        }

    def __repr__(self):
        return f"<BoardColumn {self.id}: {self.name}>"


class Access(TenantModel):
    """Board access grant. Involvement ``watching`` makes the user a board watcher."""

    __tablename__ = "accesses"
    __table_args__ = (
        db.UniqueConstraint("board_id", "user_id", name="uq_accesses_board_user"),
        db.CheckConstraint("involvement IN ('access_only', 'watching')",
                           name="ck_accesses_involvement"),
    )

    id = db.Column(db.Integer, primary_key=True)
    board_id = db.Column(db.Integer, db.ForeignKey("boards.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    involvement = db.Column(db.String(20), nullable=False, default="access_only")
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    board = db.relationship("Board", back_populates="accesses")
    user = db.relationship("User")

    def __repr__(self):
        return f"<Access board={self.board_id} user={self.user_id} {self.involvement}>"


class Entropy(TenantModel):
    """
    Auto-postpone period for an account or a board.

    Board-level rows override the account-level row. Absence of both falls
    back to DEFAULT_AUTO_POSTPONE_PERIOD.
    """

    __tablename__ = "entropies"
    __table_args__ = (
        db.UniqueConstraint("container_type", "container_id", name="uq_entropies_container"),
        db.CheckConstraint("container_type IN ('account', 'board')",
                           name="ck_entropies_container_type"),
        db.CheckConstraint("auto_postpone_period > 0", name="ck_entropies_period_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    container_type = db.Column(db.String(20), nullable=False)
    container_id = db.Column(db.Integer, nullable=False)
    auto_postpone_period = db.Column(db.Integer, nullable=False,
                                     comment="Seconds of inactivity before auto-postpone")
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "container_type": self.container_type,
            "container_id": self.container_id,
            "auto_postpone_period": self.auto_postpone_period,
        }

    def __repr__(self):
        return f"<Entropy {self.container_type}:{self.container_id}={self.auto_postpone_period}s>"
