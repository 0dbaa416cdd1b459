from datetime import datetime, timezone
from decimal import Decimal
import hashlib
import json
import logging

from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)

db = SQLAlchemy()
migrate = Migrate()

TX_TYPES = ('income', 'other')
TX_STATUSES = ('received', 'paid', 'pending')


def _money(value) -> float:
    return round(float(value or 0), 2)


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    role = db.Column(db.String(20), default='staff')  # admin or staff


class Facility(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(140), nullable=False)
    address = db.Column(db.String(255), nullable=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address or '',
            'owner_id': self.owner_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class FacilityTrainer(db.Model):
    """A user assigned to work at a facility they do not own."""
    __tablename__ = 'facility_trainer'

    id = db.Column(db.Integer, primary_key=True)
    facility_id = db.Column(db.Integer, db.ForeignKey('facility.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    user = db.relationship('User')

    __table_args__ = (
        db.UniqueConstraint('facility_id', 'user_id', name='uq_facility_trainer'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'facility_id': self.facility_id,
            'user_id': self.user_id,
            'username': self.user.username if self.user else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Plan(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    facility_id = db.Column(db.Integer, db.ForeignKey('facility.id'), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    duration_days = db.Column(db.Integer, nullable=False, default=30)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    description = db.Column(db.String(500), nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'facility_id': self.facility_id,
            'name': self.name,
            'duration_days': self.duration_days,
            'price': _money(self.price),
            'description': self.description or '',
        }


class Member(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    facility_id = db.Column(db.Integer, db.ForeignKey('facility.id'), nullable=False, index=True)
    full_name = db.Column(db.String(120), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(50), index=True)
    admission_date = db.Column(db.Date, nullable=False)
    balance = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    is_active = db.Column(db.Boolean, default=True)
    memberships = db.relationship('Membership', backref='member', cascade='all, delete-orphan')

    @property
    def avatar_url(self) -> str:
        return f"https://api.dicebear.com/6.x/initials/svg?seed={self.full_name}"

    def to_dict(self):
        active = [m for m in self.memberships if m.status == 'active']
        current = max(active, key=lambda m: m.end_date) if active else None
        return {
            'id': self.id,
            'facility_id': self.facility_id,
            'full_name': self.full_name,
            'email': self.email or '',
            'phone': self.phone or '',
            'admission_date': self.admission_date.isoformat(),
            'balance': _money(self.balance),
            'is_active': bool(self.is_active),
            'avatar_url': self.avatar_url,
            'current_membership': current.to_dict() if current else None,
        }


class Membership(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('member.id'), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey('plan.id'), nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='active')  # active/expired
    plan = db.relationship('Plan')

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'plan_id': self.plan_id,
            'plan_name': self.plan.name if self.plan else None,
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'status': self.status,
        }


class Transaction(db.Model):
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    facility_id = db.Column(db.Integer, db.ForeignKey('facility.id'), nullable=False)
    member_id = db.Column(db.Integer, db.ForeignKey('member.id'), nullable=True)
    plan_id = db.Column(db.Integer, db.ForeignKey('plan.id'), nullable=True)
    membership_id = db.Column(db.Integer, db.ForeignKey('membership.id'), nullable=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    type = db.Column(db.String(20), nullable=False, default='income')  # income/other
    status = db.Column(db.String(20), nullable=False, default='received')  # received/paid/pending
    method = db.Column(db.String(50), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now)

    member = db.relationship('Member')
    plan = db.relationship('Plan')

    __table_args__ = (
        db.Index('idx_transactions_facility_created', 'facility_id', 'created_at'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'facility_id': self.facility_id,
            'member_id': self.member_id,
            'plan_id': self.plan_id,
            'amount': _money(self.amount),
            'type': self.type,
            'status': self.status,
            'method': self.method,
            'note': self.note,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Attendance(db.Model):
    """Track member check-ins/check-outs"""
    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('member.id'), nullable=False)
    facility_id = db.Column(db.Integer, db.ForeignKey('facility.id'), nullable=False)
    date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='present')
    check_in = db.Column(db.DateTime, nullable=False, default=datetime.now)
    check_out = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    __table_args__ = (
        db.UniqueConstraint('member_id', 'facility_id', 'date', name='uq_attendance_member_day'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "member_id": self.member_id,
            "facility_id": self.facility_id,
            "date": self.date.isoformat(),
            "status": self.status,
            "check_in": self.check_in.isoformat() if self.check_in else None,
            "check_out": self.check_out.isoformat() if self.check_out else None,
            "notes": self.notes,
            "duration_minutes": self.get_duration_minutes(),
        }

    def get_duration_minutes(self):
        if self.check_out and self.check_in:
            return int((self.check_out - self.check_in).total_seconds() / 60)
        return None


class Setting(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.String(1000), nullable=True)


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    action = db.Column(db.String(100), nullable=False)
    data_json = db.Column(db.Text, nullable=False)
    # At most one successor per entry
    prev_hash = db.Column(db.String(64), nullable=True, unique=True)
    hash = db.Column(db.String(64), nullable=False)


def get_setting(key: str, default: str | None = None) -> str | None:
    s = Setting.query.filter_by(key=key).first()
    return s.value if s else default


def set_setting(key: str, value: str) -> None:
    s = Setting.query.filter_by(key=key).first()
    if not s:
        s = Setting(key=key, value=value)
        db.session.add(s)
    else:
        s.value = value
    db.session.commit()


def _audit_hash(prev: str | None, ts: str, action: str, data_json: str) -> str:
    h = hashlib.sha256()
    h.update((prev or '').encode('utf-8'))
    h.update(ts.encode('utf-8'))
    h.update(action.encode('utf-8'))
    h.update(data_json.encode('utf-8'))
    return h.hexdigest()


AUDIT_APPEND_ATTEMPTS = 3


def _audit_tail() -> str | None:
    prev = AuditLog.query.order_by(AuditLog.id.desc()).first()
    return prev.hash if prev else None


def append_audit(action: str, data: dict) -> None:
    data_json = json.dumps(data, separators=(',', ':'), sort_keys=True, default=str)
    for attempt in range(1, AUDIT_APPEND_ATTEMPTS + 1):
        # Stored naive UTC so the hashed timestamp survives a database round trip
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        prev_hash = _audit_tail()
        digest = _audit_hash(prev_hash, now.isoformat(), action, data_json)
        db.session.add(AuditLog(created_at=now, action=action, data_json=data_json,
                                prev_hash=prev_hash, hash=digest))
        try:
            db.session.commit()
            return
        except IntegrityError:
            # Another writer extended the chain from the same tail
            db.session.rollback()
            if attempt == AUDIT_APPEND_ATTEMPTS:
                raise
            logger.warning("Audit append for %s raced another writer, retrying", action)


def verify_audit_chain() -> int | None:
    """Walk the audit log in order. Returns the id of the first broken entry, or None."""
    prev_hash = None
    for rec in AuditLog.query.order_by(AuditLog.id).all():
        expected = _audit_hash(prev_hash, rec.created_at.isoformat(), rec.action, rec.data_json)
        if rec.prev_hash != prev_hash or rec.hash != expected:
            return rec.id
        prev_hash = rec.hash
    return None


def recompute_member_balance(member: Member) -> Decimal:
    """Outstanding balance is the sum of the member's open pending transactions."""
    total = (
        db.session.query(db.func.coalesce(db.func.sum(Transaction.amount), 0))
        .filter(Transaction.member_id == member.id, Transaction.status == 'pending')
        .scalar()
    )
    member.balance = Decimal(str(total or 0))
    return member.balance
