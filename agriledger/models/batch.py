from sqlalchemy.orm import validates

from ..extensions import db
from ..utils.codes import BATCH_CODE_MAX_LENGTH
from ..utils.timezone_utils import TimezoneUtils


class Batch(db.Model):
    """
    A quantity of one product held by exactly one custodian.

    Quantity only ever moves from a parent's remaining pool into a new child's
    initial pool, so the parent link is the audit trail of where a batch's
    quantity came from and is frozen once set.
    """
    __tablename__ = 'batch'

    id = db.Column(db.Integer, primary_key=True)
    batch_code = db.Column(db.String(BATCH_CODE_MAX_LENGTH), nullable=False, unique=True, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False, index=True)
    parent_batch_id = db.Column(db.Integer, db.ForeignKey('batch.id'), nullable=True, index=True)

    # Custody
    custodian_id = db.Column(db.String(64), nullable=False, index=True)
    custodian_role = db.Column(db.String(32), nullable=True)
    status_id = db.Column(db.Integer, db.ForeignKey('status.id'), nullable=False)

    # Quantity tracking
    initial_quantity = db.Column(db.Float, nullable=False)
    remaining_quantity = db.Column(db.Float, nullable=False)
    quantity_unit = db.Column(db.String(16), nullable=False, default='kg')

    origin_date = db.Column(db.Date, nullable=True)
    created_at = db.Column(db.DateTime, default=TimezoneUtils.utc_now, nullable=False)
    updated_at = db.Column(db.DateTime, default=TimezoneUtils.utc_now, onupdate=TimezoneUtils.utc_now)

    # Relationships
    product = db.relationship('Product', backref='batches')
    status = db.relationship('Status')
    parent = db.relationship(
        'Batch',
        remote_side=[id],
        backref=db.backref('children', order_by='Batch.id'),
    )

    __table_args__ = (
        db.CheckConstraint('remaining_quantity >= 0', name='check_batch_remaining_non_negative'),
        db.CheckConstraint('initial_quantity > 0', name='check_batch_initial_positive'),
        db.CheckConstraint('remaining_quantity <= initial_quantity', name='check_batch_remaining_not_exceeds_initial'),
    )

    def __repr__(self):
        return f'<Batch {self.batch_code}: {self.remaining_quantity}/{self.initial_quantity} {self.quantity_unit}>'

    @validates('parent_batch_id')
    def _freeze_parent_id(self, key, value):
        if self.parent_batch_id is not None and value != self.parent_batch_id:
            raise ValueError(f'Batch {self.batch_code} already has a parent; parent links are immutable')
        return value

    @validates('parent')
    def _freeze_parent(self, key, value):
        current = self.parent
        if current is not None and value is not current:
            raise ValueError(f'Batch {self.batch_code} already has a parent; parent links are immutable')
        return value

    @property
    def is_root(self):
        return self.parent_batch_id is None

    @property
    def is_depleted(self):
        return (self.remaining_quantity or 0) <= 0

    @property
    def status_name(self):
        return self.status.name if self.status else None

    def to_dict(self, include_product=False):
        data = {
            'id': self.id,
            'batch_code': self.batch_code,
            'product_id': self.product_id,
            'parent_batch_id': self.parent_batch_id,
            'custodian_id': self.custodian_id,
            'custodian_role': self.custodian_role,
            'status': self.status_name,
            'initial_quantity': self.initial_quantity,
            'remaining_quantity': self.remaining_quantity,
            'quantity_unit': self.quantity_unit,
            'origin_date': self.origin_date.isoformat() if self.origin_date else None,
            'created_at': TimezoneUtils.format_datetime_for_api(self.created_at),
        }
        if include_product and self.product is not None:
            data['product'] = self.product.to_dict()
        return data
