from sqlalchemy import event as sa_event
from sqlalchemy.orm import object_session

from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils


class Event(db.Model):
    """Immutable fact: an action performed on a batch by an actor at a time."""

    __tablename__ = 'event'

    id = db.Column(db.Integer, primary_key=True)
    event_type_id = db.Column(db.Integer, db.ForeignKey('event_type.id'), nullable=False)
    batch_id = db.Column(db.Integer, db.ForeignKey('batch.id'), nullable=False, index=True)
    actor_id = db.Column(db.String(64), nullable=False, index=True)

    # Role of the batch's custodian when the event happened (used for stage classification)
    custodian_role = db.Column(db.String(32), nullable=True)

    location_coords = db.Column(db.String(128), nullable=True)
    blockchain_tx_hash = db.Column(db.String(128), nullable=True)
    details = db.Column(db.JSON, nullable=True)
    recorded_at = db.Column(db.DateTime, default=TimezoneUtils.utc_now, nullable=False, index=True)

    event_type = db.relationship('EventType')
    batch = db.relationship('Batch', backref=db.backref('events', order_by='Event.id'))
    attachments = db.relationship('EventAttachment', backref='event', order_by='EventAttachment.id')
    sensor_readings = db.relationship('SensorReading', backref='event', order_by='SensorReading.id')

    def __repr__(self):
        return f'<Event {self.id}: batch={self.batch_id} type={self.event_type_id}>'

    @property
    def event_type_name(self):
        return self.event_type.name if self.event_type else None

    def to_dict(self, include_proof=False):
        data = {
            'id': self.id,
            'event_type': self.event_type_name,
            'batch_id': self.batch_id,
            'actor_id': self.actor_id,
            'custodian_role': self.custodian_role,
            'location': self.location_coords,
            'blockchain_tx': self.blockchain_tx_hash,
            'details': self.details or {},
            'recorded_at': TimezoneUtils.format_datetime_for_api(self.recorded_at),
        }
        if include_proof:
            data['attachments'] = [a.to_dict() for a in self.attachments]
            data['sensor_readings'] = [r.to_dict() for r in self.sensor_readings]
        return data


class EventAttachment(db.Model):
    """Proof file (photo, certificate, lab report) attached to an event."""

    __tablename__ = 'event_attachment'

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('event.id'), nullable=False, index=True)
    file_url = db.Column(db.String(512), nullable=False)
    file_type = db.Column(db.String(64), nullable=True)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=TimezoneUtils.utc_now, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'file_url': self.file_url,
            'file_type': self.file_type,
            'description': self.description,
        }


class SensorReading(db.Model):
    """Raw IoT payload captured alongside an event."""

    __tablename__ = 'sensor_reading'

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('event.id'), nullable=False, index=True)
    device_id = db.Column(db.String(64), nullable=False)
    raw_data = db.Column(db.JSON, nullable=False)
    captured_at = db.Column(db.DateTime, default=TimezoneUtils.utc_now, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'device_id': self.device_id,
            'raw_data': self.raw_data,
            'captured_at': TimezoneUtils.format_datetime_for_api(self.captured_at),
        }


# Events are append-only: once flushed they are never updated or deleted.
@sa_event.listens_for(Event, 'before_update')
def _reject_event_update(mapper, connection, target):
    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise ValueError(f'Event {target.id} is append-only and cannot be modified')


@sa_event.listens_for(Event, 'before_delete')
def _reject_event_delete(mapper, connection, target):
    raise ValueError(f'Event {target.id} is append-only and cannot be deleted')
