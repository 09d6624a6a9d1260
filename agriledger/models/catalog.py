from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils


class Status(db.Model):
    """Named lifecycle state a batch can be in."""

    __tablename__ = 'status'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False, unique=True)
    description = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=TimezoneUtils.utc_now, nullable=False)

    def __repr__(self):
        return f'<Status {self.name}>'


class EventType(db.Model):
    """Named kind of action recorded against a batch."""

    __tablename__ = 'event_type'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    description = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=TimezoneUtils.utc_now, nullable=False)

    def __repr__(self):
        return f'<EventType {self.name}>'
