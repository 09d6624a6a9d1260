from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils


class Product(db.Model):
    __tablename__ = 'product'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    farmer_id = db.Column(db.String(64), nullable=False, index=True)
    crop_details = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=TimezoneUtils.utc_now, nullable=False)

    def __repr__(self):
        return f'<Product {self.id}: {self.title}>'

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'farmer_id': self.farmer_id,
            'crop_details': self.crop_details,
        }
