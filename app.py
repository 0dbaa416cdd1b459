from datetime import datetime, timedelta
from decimal import Decimal
from functools import wraps
from io import BytesIO
import logging
import os

from flask import Blueprint, Flask, current_app, jsonify, redirect, render_template, request, send_file, session, url_for, flash
import pandas as pd
from pydantic import ValidationError
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash, check_password_hash

from config import configure_logging, load_config
from models import (
    Attendance, Facility, FacilityTrainer, Member, Membership, Plan, Transaction, User,
    append_audit, db, get_setting, migrate, recompute_member_balance, set_setting,
    verify_audit_chain,
)
from schemas import (
    AttendanceCheck, AttendanceHistoryQuery, BalancePayment, FacilityCreate, LoginForm,
    MemberCreate, MemberUpdate, MembershipCreate, PlanCreate, PlanUpdate, TrainerAssign,
    TransactionCreate,
)
from store import LIKE_ESCAPE, FetchFailure, TransactionStore, like_pattern
from transactions import (
    TIMELINE_LABELS, TIMELINES, area_chart, build_dashboard, build_income_report,
    change_badge, format_currency, ring_chart, trend_label,
)

logger = logging.getLogger(__name__)

bp = Blueprint('main', __name__)


class NoFacilityAccess(Exception):
    pass


class OwnerOnly(Exception):
    """A trainer reached an operation reserved for the facility owner."""


def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__)
    app.config.update(load_config())
    if overrides:
        app.config.update(overrides)
    configure_logging(app.config['LOG_LEVEL'])

    db.init_app(app)
    migrate.init_app(app, db)
    app.register_blueprint(bp)

    app.jinja_env.filters['currency'] = lambda v: format_currency(v, currency_symbol())
    app.jinja_env.globals.update(
        change_badge=change_badge,
        trend_label=trend_label,
        ring_chart=ring_chart,
        area_chart=area_chart,
        timeline_labels=TIMELINE_LABELS,
        timelines=TIMELINES,
    )

    with app.app_context():
        _ensure_schema(app)
    return app


def _ensure_schema(app: Flask) -> None:
    db.create_all()
    # Seed an admin user if none exists
    username = app.config['ADMIN_USERNAME']
    if not User.query.filter_by(username=username).first():
        db.session.add(User(username=username, password_hash=generate_password_hash(app.config['ADMIN_PASSWORD']), role='admin'))
        db.session.commit()
        logger.info("Seeded admin user %s", username)
    if get_setting('currency_symbol') is None:
        set_setting('currency_symbol', app.config['CURRENCY_SYMBOL'])


def currency_symbol() -> str:
    return get_setting('currency_symbol') or current_app.config.get('CURRENCY_SYMBOL', '₹')


def get_transaction_store():
    factory = current_app.config.get('TRANSACTION_STORE_FACTORY')
    if factory is not None:
        return factory()
    return TransactionStore(
        db.session,
        timeout_ms=current_app.config['REPORT_FETCH_TIMEOUT_MS'],
        retries=current_app.config['REPORT_FETCH_RETRIES'],
    )


def _wants_json() -> bool:
    return request.path.startswith('/api') or 'application/json' in (request.headers.get('Accept') or '')


def _error(message: str, status: int, **extra):
    body = {'ok': False, 'error': message}
    body.update(extra)
    return jsonify(body), status


@bp.after_app_request
def set_security_headers(resp):
    csp = " ".join([
        "default-src 'self'",
        "style-src 'self' 'unsafe-inline'",
        "img-src 'self' data: https://api.dicebear.com",
        "frame-ancestors 'none'",
    ])
    resp.headers['Content-Security-Policy'] = csp
    resp.headers['X-Content-Type-Options'] = 'nosniff'
    resp.headers['X-Frame-Options'] = 'DENY'
    resp.headers['Referrer-Policy'] = 'no-referrer'
    if current_app.config.get('ENABLE_HSTS'):
        resp.headers['Strict-Transport-Security'] = 'max-age=63072000; includeSubDomains; preload'
    return resp


@bp.app_errorhandler(ValidationError)
def handle_validation_error(exc: ValidationError):
    db.session.rollback()
    details = [
        {'loc': [str(p) for p in e['loc']], 'msg': e['msg'], 'type': e['type']}
        for e in exc.errors()
    ]
    return _error('Invalid request', 400, details=details)


@bp.app_errorhandler(NoFacilityAccess)
def handle_no_access(exc):
    if _wants_json():
        return _error('No access', 409)
    return render_template('no_facility.html'), 409


@bp.app_errorhandler(OwnerOnly)
def handle_owner_only(exc):
    if _wants_json():
        return _error('Owner access only', 403)
    return render_template('no_facility.html', owner_only=True), 403


@bp.app_errorhandler(SQLAlchemyError)
def handle_database_error(exc):
    db.session.rollback()
    logger.error("Database error on %s %s", request.method, request.path, exc_info=exc)
    if _wants_json():
        return _error('Database error', 500)
    return render_template('error.html', message='The database could not complete the request.'), 500


# Simple session-based login protection
def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if not session.get('user_id'):
            if _wants_json():
                return _error('Login required', 401)
            return redirect(url_for('main.login', next=request.path))
        return view_func(*args, **kwargs)
    return wrapper


def is_trainer(facility: Facility, user_id) -> bool:
    return FacilityTrainer.query.filter_by(facility_id=facility.id, user_id=user_id).first() is not None


def get_facility(facility_id: int, owner_only: bool = False) -> Facility:
    """Facility the logged-in user owns or is assigned to as a trainer.

    Anyone else gets NoFacilityAccess. With ``owner_only`` a trainer gets
    OwnerOnly instead.
    """
    user_id = session.get('user_id')
    facility = db.session.get(Facility, facility_id)
    if not facility:
        raise NoFacilityAccess(facility_id)
    if facility.owner_id == user_id:
        return facility
    if not is_trainer(facility, user_id):
        raise NoFacilityAccess(facility_id)
    if owner_only:
        raise OwnerOnly(facility_id)
    return facility


def accessible_facilities(user_id) -> list[Facility]:
    """Owned facilities plus the ones the user trains at, by id."""
    assigned = select(FacilityTrainer.facility_id).where(FacilityTrainer.user_id == user_id)
    return (
        Facility.query
        .filter(or_(Facility.owner_id == user_id, Facility.id.in_(assigned)))
        .order_by(Facility.id)
        .all()
    )


def _member_in_facility(facility: Facility, member_id: int) -> Member | None:
    member = db.session.get(Member, member_id)
    if not member or member.facility_id != facility.id:
        return None
    return member


def _plan_in_facility(facility: Facility, plan_id: int) -> Plan | None:
    plan = db.session.get(Plan, plan_id)
    if not plan or plan.facility_id != facility.id:
        return None
    return plan


def _body() -> dict:
    return request.get_json(silent=True) or {}


# ============= AUTH =============

@bp.route('/')
def home():
    if session.get('user_id'):
        facilities = accessible_facilities(session['user_id'])
        if facilities:
            return redirect(url_for('main.report_page', facility_id=facilities[0].id))
        return render_template('no_facility.html')
    return redirect(url_for('main.login'))


@bp.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'POST':
        try:
            form = LoginForm.model_validate(request.form.to_dict())
        except ValidationError:
            flash('Username and password are required', 'warning')
            return render_template('login.html'), 400
        user = User.query.filter_by(username=form.username).first()
        if not (user and check_password_hash(user.password_hash or '', form.password)):
            logger.info("Failed login for %s", form.username)
            flash('Invalid credentials', 'danger')
            return render_template('login.html'), 401
        session['user_id'] = user.id
        session['username'] = user.username
        next_url = form.next or request.args.get('next') or ''
        # Only same-site relative redirects
        if not next_url.startswith('/') or next_url.startswith('//'):
            next_url = url_for('main.home')
        return redirect(next_url)
    return render_template('login.html')


@bp.route('/logout')
def logout():
    session.clear()
    return redirect(url_for('main.login'))


# ============= PAGES =============

@bp.route('/<int:facility_id>/transactions')
@login_required
def transactions_page(facility_id):
    facility = get_facility(facility_id)
    timeline = request.args.get('timeline') or 'today'
    plan = request.args.get('plan') or 'all'
    search = request.args.get('search') or ''
    plans = Plan.query.filter_by(facility_id=facility.id).order_by(Plan.name).all()
    try:
        report = build_income_report(get_transaction_store(), facility.id, timeline, plan, search=search)
    except FetchFailure as exc:
        return render_template(
            'transactions.html', facility=facility, plans=plans, report=None, error=str(exc),
            timeline=timeline, plan=plan, search=search,
        ), 503
    resp = current_app.make_response(render_template(
        'transactions.html', facility=facility, plans=plans, report=report, error=None,
        timeline=report.window.timeline, plan=plan, search=report.search,
    ))
    resp.headers['Cache-Control'] = 'private, max-age=60'
    resp.headers['Vary'] = 'Cookie'
    return resp


@bp.route('/<int:facility_id>/report')
@login_required
def report_page(facility_id):
    facility = get_facility(facility_id)
    try:
        dashboard = build_dashboard(get_transaction_store(), facility.id)
    except FetchFailure as exc:
        return render_template('report.html', facility=facility, dashboard=None, error=str(exc)), 503
    return render_template('report.html', facility=facility, dashboard=dashboard, error=None)


# ============= FACILITIES =============

@bp.route('/api/facilities', methods=['GET'])
@login_required
def list_facilities():
    user_id = session['user_id']
    facilities = []
    for f in accessible_facilities(user_id):
        data = f.to_dict()
        data['is_owner'] = f.owner_id == user_id
        facilities.append(data)
    return jsonify({'ok': True, 'facilities': facilities})


@bp.route('/api/facilities', methods=['POST'])
@login_required
def add_facility():
    data = FacilityCreate.model_validate(_body())
    facility = Facility(name=data.name, address=data.address, owner_id=session['user_id'])
    db.session.add(facility)
    db.session.commit()
    append_audit('facility.create', {'facility_id': facility.id, 'name': facility.name, 'user_id': session['user_id']})
    return jsonify({'ok': True, 'facility': facility.to_dict()}), 201


@bp.route('/api/audit/verify', methods=['GET'])
@login_required
def audit_verify():
    broken = verify_audit_chain()
    if broken is not None:
        logger.warning("Audit chain broken at entry %s", broken)
    return jsonify({'ok': broken is None, 'broken_at': broken})


# ============= TRAINERS =============

@bp.route('/api/<int:facility_id>/trainers', methods=['GET'])
@login_required
def list_trainers(facility_id):
    facility = get_facility(facility_id, owner_only=True)
    rows = FacilityTrainer.query.filter_by(facility_id=facility.id).order_by(FacilityTrainer.id).all()
    return jsonify({'ok': True, 'trainers': [t.to_dict() for t in rows]})


@bp.route('/api/<int:facility_id>/trainers', methods=['POST'])
@login_required
def add_trainer(facility_id):
    facility = get_facility(facility_id, owner_only=True)
    data = TrainerAssign.model_validate(_body())
    user = User.query.filter_by(username=data.username).first()
    if not user:
        return _error('No user found with this username', 404)
    if user.id == facility.owner_id:
        return _error('The owner already has access', 400)
    if is_trainer(facility, user.id):
        return _error('Trainer already assigned', 400)
    trainer = FacilityTrainer(facility_id=facility.id, user_id=user.id)
    db.session.add(trainer)
    db.session.commit()
    append_audit('trainer.assign', {'facility_id': facility.id, 'trainer_user_id': user.id, 'user_id': session['user_id']})
    return jsonify({'ok': True, 'message': 'Trainer added successfully', 'trainer': trainer.to_dict()}), 201


@bp.route('/api/<int:facility_id>/trainers/<int:trainer_id>', methods=['DELETE'])
@login_required
def remove_trainer(facility_id, trainer_id):
    facility = get_facility(facility_id, owner_only=True)
    trainer = db.session.get(FacilityTrainer, trainer_id)
    if not trainer or trainer.facility_id != facility.id:
        return _error('Trainer not found', 404)
    user_id = trainer.user_id
    db.session.delete(trainer)
    db.session.commit()
    append_audit('trainer.remove', {'facility_id': facility.id, 'trainer_user_id': user_id, 'user_id': session['user_id']})
    return jsonify({'ok': True})


# ============= PLANS =============

@bp.route('/api/<int:facility_id>/plans', methods=['GET'])
@login_required
def list_plans(facility_id):
    facility = get_facility(facility_id)
    plans = Plan.query.filter_by(facility_id=facility.id).order_by(Plan.name).all()
    return jsonify({'ok': True, 'plans': [p.to_dict() for p in plans]})


@bp.route('/api/<int:facility_id>/plans', methods=['POST'])
@login_required
def add_plan(facility_id):
    facility = get_facility(facility_id, owner_only=True)
    data = PlanCreate.model_validate(_body())
    plan = Plan(facility_id=facility.id, **data.model_dump())
    db.session.add(plan)
    db.session.commit()
    append_audit('plan.create', {'facility_id': facility.id, 'plan_id': plan.id, 'user_id': session['user_id']})
    return jsonify({'ok': True, 'plan': plan.to_dict()}), 201


@bp.route('/api/<int:facility_id>/plans/<int:plan_id>', methods=['PUT'])
@login_required
def update_plan(facility_id, plan_id):
    facility = get_facility(facility_id, owner_only=True)
    plan = _plan_in_facility(facility, plan_id)
    if not plan:
        return _error('Plan not found', 404)
    changed = PlanUpdate.model_validate(_body()).model_dump(exclude_unset=True)
    for key, value in changed.items():
        setattr(plan, key, value)
    if changed:
        db.session.commit()
        append_audit('plan.update', {'plan_id': plan.id, **changed, 'user_id': session['user_id']})
    return jsonify({'ok': True, 'plan': plan.to_dict()})


@bp.route('/api/<int:facility_id>/plans/<int:plan_id>', methods=['DELETE'])
@login_required
def delete_plan(facility_id, plan_id):
    facility = get_facility(facility_id, owner_only=True)
    plan = _plan_in_facility(facility, plan_id)
    if not plan:
        return _error('Plan not found', 404)
    if Membership.query.filter_by(plan_id=plan.id, status='active').first():
        return _error('Plan has active memberships', 400)
    # Past memberships and recorded income keep pointing at the plan
    if Membership.query.filter_by(plan_id=plan.id).first() or Transaction.query.filter_by(plan_id=plan.id).first():
        return _error('Plan is referenced by past memberships or transactions', 400)
    db.session.delete(plan)
    db.session.commit()
    append_audit('plan.delete', {'plan_id': plan_id, 'user_id': session['user_id']})
    return jsonify({'ok': True})


# ============= MEMBERS =============

@bp.route('/api/<int:facility_id>/members', methods=['GET'])
@login_required
def list_members(facility_id):
    facility = get_facility(facility_id)
    q = (request.args.get('search') or '').strip()
    query = Member.query.filter_by(facility_id=facility.id)
    if q:
        like = like_pattern(q)
        query = query.filter(or_(
            Member.full_name.ilike(like, escape=LIKE_ESCAPE),
            Member.email.ilike(like, escape=LIKE_ESCAPE),
            Member.phone.ilike(like, escape=LIKE_ESCAPE),
        ))
    members = query.order_by(Member.id.desc()).all()
    return jsonify({'ok': True, 'members': [m.to_dict() for m in members]})


@bp.route('/api/<int:facility_id>/members', methods=['POST'])
@login_required
def add_member(facility_id):
    facility = get_facility(facility_id)
    data = MemberCreate.model_validate(_body())
    m = Member(facility_id=facility.id, balance=Decimal('0'), **data.model_dump())
    db.session.add(m)
    db.session.commit()
    append_audit('member.create', {'member_id': m.id, 'facility_id': facility.id, 'full_name': m.full_name})
    return jsonify({'ok': True, 'member': m.to_dict()}), 201


@bp.route('/api/<int:facility_id>/members/<int:member_id>', methods=['GET'])
@login_required
def get_member(facility_id, member_id):
    facility = get_facility(facility_id)
    m = _member_in_facility(facility, member_id)
    if not m:
        return _error('Member not found', 404)
    now = datetime.now()
    expired = [ms for ms in m.memberships if ms.status == 'active' and ms.end_date < now]
    for ms in expired:
        ms.status = 'expired'
    if expired:
        db.session.commit()
    txs = (
        Transaction.query.filter_by(member_id=m.id)
        .order_by(Transaction.created_at.desc())
        .limit(50)
        .all()
    )
    data = m.to_dict()
    data['memberships'] = [ms.to_dict() for ms in sorted(m.memberships, key=lambda x: x.start_date, reverse=True)]
    data['transactions'] = [t.to_dict() for t in txs]
    return jsonify({'ok': True, 'member': data})


@bp.route('/api/<int:facility_id>/members/<int:member_id>', methods=['PUT'])
@login_required
def update_member(facility_id, member_id):
    facility = get_facility(facility_id)
    m = _member_in_facility(facility, member_id)
    if not m:
        return _error('Member not found', 404)
    changed = MemberUpdate.model_validate(_body()).model_dump(exclude_unset=True)
    for key, value in changed.items():
        setattr(m, key, value)
    if changed:
        db.session.commit()
        append_audit('member.update', {'member_id': m.id, **changed, 'user_id': session['user_id']})
    return jsonify({'ok': True, 'member': m.to_dict(), 'changed': sorted(changed)})


@bp.route('/api/<int:facility_id>/members/<int:member_id>', methods=['DELETE'])
@login_required
def delete_member(facility_id, member_id):
    facility = get_facility(facility_id)
    m = _member_in_facility(facility, member_id)
    if not m:
        return _error('Member not found', 404)
    Attendance.query.filter_by(member_id=m.id).delete()
    # Outstanding dues go with the member; settled income stays on the books
    Transaction.query.filter_by(member_id=m.id, status='pending').delete()
    Transaction.query.filter_by(member_id=m.id).update({'member_id': None, 'membership_id': None})
    db.session.delete(m)
    db.session.commit()
    append_audit('member.delete', {'member_id': member_id, 'user_id': session['user_id']})
    return jsonify({'ok': True})


@bp.route('/api/<int:facility_id>/members/<int:member_id>/memberships', methods=['POST'])
@login_required
def add_membership(facility_id, member_id):
    facility = get_facility(facility_id)
    m = _member_in_facility(facility, member_id)
    if not m:
        return _error('Member not found', 404)
    data = MembershipCreate.model_validate(_body())
    plan = _plan_in_facility(facility, data.plan_id)
    if not plan:
        return _error('Invalid plan selected', 400)

    total = Decimal(plan.price) - data.discount
    amount = total if data.is_full_payment else data.paid_amount
    if amount <= 0 or amount > total:
        return _error('Invalid payment amount', 400)
    remainder = total - amount

    now = datetime.now()
    try:
        ms = Membership(member_id=m.id, plan_id=plan.id, start_date=now,
                        end_date=now + timedelta(days=plan.duration_days), status='active')
        db.session.add(ms)
        db.session.flush()
        db.session.add(Transaction(
            facility_id=facility.id, member_id=m.id, plan_id=plan.id, membership_id=ms.id,
            amount=amount, type='income', status='received', method=data.payment_method, created_at=now,
        ))
        if remainder > 0:
            db.session.add(Transaction(
                facility_id=facility.id, member_id=m.id, plan_id=plan.id, membership_id=ms.id,
                amount=remainder, type='income', status='pending', method=data.payment_method, created_at=now,
            ))
        db.session.flush()
        recompute_member_balance(m)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to create membership for member %s", m.id)
        return _error('Failed to create membership', 500)
    append_audit('membership.create', {
        'member_id': m.id, 'plan_id': plan.id, 'membership_id': ms.id,
        'paid': amount, 'remaining': remainder, 'user_id': session['user_id'],
    })
    return jsonify({'ok': True, 'membership': ms.to_dict(), 'member': m.to_dict()}), 201


@bp.route('/api/<int:facility_id>/members/<int:member_id>/payments', methods=['POST'])
@login_required
def pay_balance(facility_id, member_id):
    facility = get_facility(facility_id)
    m = _member_in_facility(facility, member_id)
    if not m:
        return _error('Member not found', 404)
    data = BalancePayment.model_validate(_body())
    outstanding = recompute_member_balance(m)
    if outstanding <= 0:
        return _error('No outstanding balance', 400)
    if data.amount > outstanding:
        return _error('Payment exceeds outstanding balance', 400)

    try:
        remaining = data.amount
        settled_plan = None
        open_dues = (
            Transaction.query.filter_by(member_id=m.id, status='pending')
            .order_by(Transaction.created_at, Transaction.id)
            .all()
        )
        for due in open_dues:
            if remaining <= 0:
                break
            covered = min(Decimal(due.amount), remaining)
            due.amount = Decimal(due.amount) - covered
            remaining -= covered
            settled_plan = settled_plan or due.plan_id
            if due.amount == 0:
                db.session.delete(due)
        tx = Transaction(
            facility_id=facility.id, member_id=m.id, plan_id=settled_plan,
            amount=data.amount, type='income', status='received', method=data.payment_method,
        )
        db.session.add(tx)
        db.session.flush()
        recompute_member_balance(m)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to record balance payment for member %s", m.id)
        return _error('Failed to record payment', 500)
    append_audit('payment.balance', {'member_id': m.id, 'transaction_id': tx.id, 'amount': data.amount, 'user_id': session['user_id']})
    return jsonify({'ok': True, 'transaction': tx.to_dict(), 'member': m.to_dict()}), 201


# ============= TRANSACTIONS =============

@bp.route('/api/<int:facility_id>/transactions', methods=['GET'])
@login_required
def transactions_api(facility_id):
    facility = get_facility(facility_id)
    try:
        report = build_income_report(
            get_transaction_store(), facility.id,
            request.args.get('timeline'), request.args.get('plan'),
            search=request.args.get('search'),
        )
    except FetchFailure as exc:
        return _error(str(exc), 503, retryable=True)
    data = report.to_dict()
    data['percentBadge'] = change_badge(report.summary.percent_change)
    data['ring'] = ring_chart(report.summary.income, report.summary.total_pending_balance)
    return jsonify(data)


@bp.route('/api/<int:facility_id>/transactions', methods=['POST'])
@login_required
def add_transaction(facility_id):
    facility = get_facility(facility_id)
    data = TransactionCreate.model_validate(_body())
    member = None
    if data.member_id is not None:
        member = _member_in_facility(facility, data.member_id)
        if not member:
            return _error('Member not found', 404)
    if data.plan_id is not None and not _plan_in_facility(facility, data.plan_id):
        return _error('Invalid plan selected', 400)
    tx = Transaction(facility_id=facility.id, **data.model_dump())
    db.session.add(tx)
    db.session.flush()
    if member is not None:
        recompute_member_balance(member)
    db.session.commit()
    append_audit('transaction.create', {'transaction_id': tx.id, 'amount': tx.amount, 'status': tx.status, 'user_id': session['user_id']})
    return jsonify({'ok': True, 'transaction': tx.to_dict()}), 201


@bp.route('/api/<int:facility_id>/transactions/export', methods=['GET'])
@login_required
def export_transactions(facility_id):
    facility = get_facility(facility_id)
    try:
        report = build_income_report(
            get_transaction_store(), facility.id,
            request.args.get('timeline') or 'allTime', request.args.get('plan'),
            search=request.args.get('search'),
        )
    except FetchFailure as exc:
        return _error(str(exc), 503, retryable=True)
    df = transactions_frame(report.transactions)
    buf = BytesIO()
    df.to_excel(buf, index=False)
    buf.seek(0)
    filename = f"transactions_{facility.id}_{report.window.timeline}.xlsx"
    return send_file(
        buf, as_attachment=True, download_name=filename,
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    )


def transactions_frame(records) -> pd.DataFrame:
    rows = [
        {
            'ID': r.id,
            'Date': r.timestamp.strftime('%Y-%m-%d %H:%M'),
            'Member': r.payer_name,
            'Plan': r.plan_name,
            'Type': r.type,
            'Status': r.status,
            'Amount': float(r.amount),
        }
        for r in records
    ]
    return pd.DataFrame(rows, columns=['ID', 'Date', 'Member', 'Plan', 'Type', 'Status', 'Amount'])


@bp.route('/api/<int:facility_id>/report', methods=['GET'])
@login_required
def report_api(facility_id):
    facility = get_facility(facility_id)
    try:
        dashboard = build_dashboard(get_transaction_store(), facility.id)
    except FetchFailure as exc:
        return _error(str(exc), 503, retryable=True)
    return jsonify(dashboard.to_dict())


# ============= ATTENDANCE =============

@bp.route('/api/<int:facility_id>/attendance/checkin', methods=['POST'])
@login_required
def attendance_checkin(facility_id):
    """Check in a member"""
    facility = get_facility(facility_id)
    data = AttendanceCheck.model_validate(_body())
    member = _member_in_facility(facility, data.member_id)
    if not member:
        return _error('Member not found', 404)
    day = data.day or datetime.now().date()
    existing = Attendance.query.filter_by(member_id=member.id, facility_id=facility.id, date=day).first()
    if existing:
        return _error('Attendance already marked for this date', 400)
    try:
        attendance = Attendance(member_id=member.id, facility_id=facility.id, date=day,
                                check_in=datetime.now(), notes=data.notes)
        db.session.add(attendance)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to mark attendance for member %s", member.id)
        return _error('Failed to mark attendance', 500)
    return jsonify({'ok': True, 'message': 'Check-in recorded successfully', 'attendance': attendance.to_dict()})


@bp.route('/api/<int:facility_id>/attendance/checkout', methods=['POST'])
@login_required
def attendance_checkout(facility_id):
    """Check out a member"""
    facility = get_facility(facility_id)
    data = AttendanceCheck.model_validate(_body())
    day = data.day or datetime.now().date()
    attendance = Attendance.query.filter_by(
        member_id=data.member_id, facility_id=facility.id, date=day,
    ).filter(Attendance.check_out.is_(None)).first()
    if not attendance:
        return _error('No active check-in found', 404)
    attendance.check_out = datetime.now()
    db.session.commit()
    return jsonify({'ok': True, 'message': 'Check-out recorded successfully', 'attendance': attendance.to_dict()})


@bp.route('/api/<int:facility_id>/attendance/today', methods=['GET'])
@login_required
def attendance_today(facility_id):
    facility = get_facility(facility_id)
    today = datetime.now().date()
    rows = (
        db.session.query(Attendance, Member.full_name)
        .join(Member, Member.id == Attendance.member_id)
        .filter(Attendance.facility_id == facility.id, Attendance.date == today)
        .order_by(Attendance.check_in)
        .all()
    )
    result = []
    for att, name in rows:
        data = att.to_dict()
        data['member_name'] = name
        result.append(data)
    return jsonify({'ok': True, 'attendance': result, 'count': len(result)})


@bp.route('/api/<int:facility_id>/attendance/history', methods=['GET'])
@login_required
def attendance_history(facility_id):
    """Attendance for a member and/or date range, newest first"""
    facility = get_facility(facility_id)
    params = AttendanceHistoryQuery.model_validate(request.args.to_dict())
    query = db.session.query(Attendance, Member.full_name).join(Member, Member.id == Attendance.member_id)
    query = query.filter(Attendance.facility_id == facility.id)
    if params.member_id:
        query = query.filter(Attendance.member_id == params.member_id)
    if params.date_from:
        query = query.filter(Attendance.date >= params.date_from)
    if params.date_to:
        query = query.filter(Attendance.date <= params.date_to)
    rows = query.order_by(Attendance.check_in.desc()).limit(100).all()
    result = []
    for att, name in rows:
        data = att.to_dict()
        data['member_name'] = name or 'Unknown'
        result.append(data)
    return jsonify({'ok': True, 'attendance': result})


if __name__ == '__main__':
    app = create_app()
    debug_mode = os.getenv('FLASK_DEBUG', '0') == '1'
    app.run(debug=debug_mode, host='0.0.0.0', port=int(os.getenv('PORT', '5000')))
