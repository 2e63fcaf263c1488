from bargain import db, bcrypt
from flask_login import UserMixin
from datetime import datetime, timezone
import json


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() + 'Z' if value else None


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(128), nullable=False)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
        }


class Shop(db.Model):
    __tablename__ = 'shop'
    id = db.Column(db.Integer, primary_key=True)
    shop_domain = db.Column(db.String(255), unique=True, nullable=False, index=True)
    is_enabled = db.Column(db.Boolean, default=True, nullable=False)
    settings = db.Column(db.Text, nullable=True)  # JSON configuration document
    access_token = db.Column(db.String(255), nullable=True)
    installed_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def document(self) -> dict:
        try:
            doc = json.loads(self.settings) if self.settings else {}
        except ValueError:
            doc = {'_corrupt': self.settings}
        if not isinstance(doc, dict):
            doc = {'_corrupt': self.settings}
        doc['isEnabled'] = bool(self.is_enabled)
        return doc

    def to_dict(self):
        return {
            'shop_domain': self.shop_domain,
            'is_enabled': self.is_enabled,
            'has_access_token': bool(self.access_token),
            'installed_at': _iso(self.installed_at),
            'updated_at': _iso(self.updated_at),
        }


class GameSession(db.Model):
    __tablename__ = 'game_session'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    shop_domain = db.Column(db.String(255), nullable=False, index=True)
    customer_id = db.Column(db.String(64), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_key = db.Column(db.String(255), nullable=True)
    state = db.Column(db.String(16), default='pending', nullable=False, index=True)  # pending, completed, expired, abandoned
    source = db.Column(db.String(32), nullable=True)
    referrer = db.Column(db.String(1024), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    final_score = db.Column(db.Integer, nullable=True)
    discount_percent = db.Column(db.Integer, default=0, nullable=False)
    discount_code = db.Column(db.String(64), nullable=True)
    issuance = db.Column(db.String(16), default='none', nullable=False)  # none, pending, issued, failed
    telemetry = db.Column(db.Text, nullable=True)  # JSON

    def to_dict(self):
        return {
            'session_id': self.session_id,
            'shop_domain': self.shop_domain,
            'customer_id': self.customer_id,
            'customer_email': self.customer_email,
            'state': self.state,
            'source': self.source,
            'created_at': _iso(self.created_at),
            'completed_at': _iso(self.completed_at),
            'final_score': self.final_score,
            'discount_percent': self.discount_percent,
            'discount_code': self.discount_code,
            'issuance': self.issuance,
        }


class Discount(db.Model):
    __tablename__ = 'discount'
    __table_args__ = (
        db.UniqueConstraint('shop_domain', 'code', name='uq_discount_shop_code'),
    )
    id = db.Column(db.Integer, primary_key=True)
    shop_domain = db.Column(db.String(255), nullable=False, index=True)
    code = db.Column(db.String(64), nullable=False)
    # One code per session, never shared
    session_id = db.Column(db.String(64), db.ForeignKey('game_session.session_id'), unique=True, nullable=False)
    percent = db.Column(db.Integer, nullable=False)
    tier_min_score = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), default='pending', nullable=False)  # pending, active, failed
    price_rule_id = db.Column(db.String(64), nullable=True)
    platform_discount_id = db.Column(db.String(64), nullable=True)
    customer_id = db.Column(db.String(64), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    is_used = db.Column(db.Boolean, default=False, nullable=False)
    used_at = db.Column(db.DateTime, nullable=True)
    order_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)

    def to_dict(self):
        return {
            'code': self.code,
            'shop_domain': self.shop_domain,
            'session_id': self.session_id,
            'percent': self.percent,
            'status': self.status,
            'is_used': self.is_used,
            'used_at': _iso(self.used_at),
            'order_id': self.order_id,
            'created_at': _iso(self.created_at),
            'expires_at': _iso(self.expires_at),
        }


class PlayCounter(db.Model):
    __tablename__ = 'play_counter'
    __table_args__ = (
        db.UniqueConstraint('shop_domain', 'customer_key', 'period', name='uq_play_counter_key'),
    )
    id = db.Column(db.Integer, primary_key=True)
    shop_domain = db.Column(db.String(255), nullable=False, index=True)
    customer_key = db.Column(db.String(255), nullable=False)  # '*' for the shop-wide counter
    period = db.Column(db.String(10), nullable=False)  # YYYY-MM-DD or 'lifetime'
    count = db.Column(db.Integer, default=0, nullable=False)
