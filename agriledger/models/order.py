from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils


class Order(db.Model):
    """
    A purchase of one or more batch lines from a single seller.

    Orders are not complete at creation; completion is flipped by whoever
    confirms final delivery.
    """
    __tablename__ = 'ledger_order'

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)
    buyer_id = db.Column(db.String(64), nullable=False, index=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)
    total_amount = db.Column(db.Float, nullable=False, default=0.0)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=TimezoneUtils.utc_now, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)

    items = db.relationship('OrderItem', backref='order', order_by='OrderItem.id')
    shipment = db.relationship('Shipment', backref='order', uselist=False)

    def __repr__(self):
        return f'<Order {self.order_number}: {self.buyer_id} <- {self.seller_id}>'

    def to_dict(self, include_items=True):
        data = {
            'id': self.id,
            'order_number': self.order_number,
            'buyer_id': self.buyer_id,
            'seller_id': self.seller_id,
            'total_amount': self.total_amount,
            'is_completed': bool(self.is_completed),
            'created_at': TimezoneUtils.format_datetime_for_api(self.created_at),
            'completed_at': TimezoneUtils.format_datetime_for_api(self.completed_at),
        }
        if include_items:
            data['items'] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    __tablename__ = 'ledger_order_item'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('ledger_order.id'), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey('batch.id'), nullable=False, index=True)
    downstream_batch_id = db.Column(db.Integer, db.ForeignKey('batch.id'), nullable=True)
    quantity = db.Column(db.Float, nullable=False)
    unit_price = db.Column(db.Float, nullable=False, default=0.0)
    line_total = db.Column(db.Float, nullable=False, default=0.0)

    source_batch = db.relationship('Batch', foreign_keys=[batch_id])
    downstream_batch = db.relationship('Batch', foreign_keys=[downstream_batch_id])

    __table_args__ = (
        db.CheckConstraint('quantity > 0', name='check_order_item_quantity_positive'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'batch_id': self.batch_id,
            'batch_code': self.source_batch.batch_code if self.source_batch else None,
            'downstream_batch_id': self.downstream_batch_id,
            'downstream_batch_code': self.downstream_batch.batch_code if self.downstream_batch else None,
            'quantity': self.quantity,
            'unit_price': self.unit_price,
            'line_total': self.line_total,
        }


class Shipment(db.Model):
    __tablename__ = 'shipment'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('ledger_order.id'), nullable=False, unique=True)
    transporter_id = db.Column(db.String(64), nullable=False, index=True)
    estimated_delivery = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(32), nullable=False, default='Assigned')
    created_at = db.Column(db.DateTime, default=TimezoneUtils.utc_now, nullable=False)
    updated_at = db.Column(db.DateTime, default=TimezoneUtils.utc_now, onupdate=TimezoneUtils.utc_now)

    def to_dict(self):
        return {
            'id': self.id,
            'order_id': self.order_id,
            'transporter_id': self.transporter_id,
            'status': self.status,
            'estimated_delivery': TimezoneUtils.format_datetime_for_api(self.estimated_delivery),
            'created_at': TimezoneUtils.format_datetime_for_api(self.created_at),
        }
