import atexit
import csv
import hashlib
import io
import ipaddress
import logging
import os
import secrets
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from functools import wraps
from pathlib import Path

import click
from flask import Flask, jsonify, make_response, redirect, request, send_file
from flask_sqlalchemy import SQLAlchemy
from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import event, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename


logger = logging.getLogger(__name__)

db = SQLAlchemy()

HALL_TYPES = ("TH", "BH")
BASE_TYPES = ("WAR", "FARMING", "HYBRID", "CWL", "TROPHY", "FUN", "PROGRESS_BASE")
HALL_LEVEL_RANGES = {"TH": (3, 17), "BH": (3, 10)}
CSV_REQUIRED_COLUMNS = ("name", "image_path", "layout_link")
CSV_OPTIONAL_COLUMNS = ("description", "stats", "tips")
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}
CORS_ALLOW_HEADERS = "authorization, x-client-info, apikey, content-type"


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def isoformat(value):
    value = as_utc(value)
    return value.isoformat() if value else None


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_sign_in_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Session(db.Model):
    __tablename__ = "sessions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    access_token = db.Column(db.String(255), unique=True, nullable=False, index=True)
    refresh_token = db.Column(db.String(255), unique=True, nullable=False, index=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    device_info = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class BaseLayout(db.Model):
    __tablename__ = "bases"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    image_url = db.Column(db.String(1000), nullable=True)
    layout_link = db.Column(db.String(1000), nullable=False)
    description = db.Column(db.Text, nullable=True)
    stats = db.Column(db.Text, nullable=True)
    tips = db.Column(db.Text, nullable=True)
    hall_type = db.Column(db.Enum(*HALL_TYPES, name="hall_type"), nullable=False, index=True)
    hall_level = db.Column(db.Integer, nullable=False, index=True)
    base_type = db.Column(db.Enum(*BASE_TYPES, name="base_type"), nullable=False, index=True)
    download_count = db.Column(db.Integer, nullable=False, default=0)
    average_rating = db.Column(db.Float, nullable=False, default=0)
    rating_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Rating(db.Model):
    __tablename__ = "ratings"
    __table_args__ = (
        db.UniqueConstraint("base_id", "browser_fingerprint", name="uq_ratings_base_fingerprint"),
        db.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_ratings_rating_range"),
    )

    id = db.Column(db.Integer, primary_key=True)
    base_id = db.Column(db.Integer, db.ForeignKey("bases.id", ondelete="CASCADE"), nullable=False, index=True)
    ip_address = db.Column(db.String(64), nullable=True)
    browser_fingerprint = db.Column(db.String(128), nullable=False)
    rating = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class Download(db.Model):
    __tablename__ = "downloads"

    id = db.Column(db.Integer, primary_key=True)
    base_id = db.Column(db.Integer, db.ForeignKey("bases.id", ondelete="SET NULL"), nullable=True, index=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class AdminUser(db.Model):
    __tablename__ = "admin_users"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), unique=True, nullable=False, index=True)
    allowed_ips = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class AdminLoginAttempt(db.Model):
    __tablename__ = "admin_login_attempts"

    id = db.Column(db.Integer, primary_key=True)
    ip_address = db.Column(db.String(64), nullable=False, index=True)
    user_agent = db.Column(db.String(512), nullable=True)
    success = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    admin_user_id = db.Column(db.Integer, db.ForeignKey("admin_users.id"), nullable=False)
    action = db.Column(db.String(255), nullable=False)
    ip_address = db.Column(db.String(64), nullable=True)
    device_info = db.Column(db.String(512), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class SecurityEvent(db.Model):
    __tablename__ = "security_events"

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(120), nullable=False, index=True)
    severity = db.Column(db.String(20), nullable=False, default="warning")
    ip_address = db.Column(db.String(64), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    details = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


def refresh_rating_aggregates(connection, base_id):
    """Recompute average_rating and rating_count for one base in a single statement."""
    ratings = Rating.__table__
    bases = BaseLayout.__table__
    average = select(func.avg(ratings.c.rating)).where(ratings.c.base_id == base_id).scalar_subquery()
    count = select(func.count(ratings.c.id)).where(ratings.c.base_id == base_id).scalar_subquery()
    connection.execute(
        update(bases)
        .where(bases.c.id == base_id)
        .values(average_rating=func.coalesce(average, 0), rating_count=count)
    )


@event.listens_for(Rating, "after_insert")
def rating_after_insert(mapper, connection, target):
    refresh_rating_aggregates(connection, target.base_id)


@event.listens_for(Rating, "after_delete")
def rating_after_delete(mapper, connection, target):
    refresh_rating_aggregates(connection, target.base_id)


def increment_download_count(base_id):
    db.session.execute(
        update(BaseLayout)
        .where(BaseLayout.id == base_id)
        .values(download_count=BaseLayout.download_count + 1)
        .execution_options(synchronize_session=False)
    )


def cleanup_old_login_attempts(retention_hours=24):
    cutoff = utcnow() - timedelta(hours=retention_hours)
    removed = AdminLoginAttempt.query.filter(AdminLoginAttempt.created_at < cutoff).delete()
    db.session.commit()
    return int(removed or 0)


def record_download(base_id, ip_address, user_agent):
    db.session.add(Download(base_id=base_id, ip_address=ip_address, user_agent=user_agent))
    increment_download_count(base_id)
    db.session.commit()


class TrackingQueue:
    """Runs best-effort tracking jobs without letting them affect the caller.

    In ``background`` mode jobs go to a thread pool; ``inline`` mode runs them
    immediately. Either way every job gets its own app context and session,
    and failures are logged rather than raised.
    """

    def __init__(self, app, mode="background", workers=4):
        self.app = app
        self.mode = mode
        self.executor = None
        if mode == "background":
            self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tracking")
            atexit.register(self.shutdown)

    def submit(self, job, *args, **kwargs):
        if self.executor is None:
            self._run(job, *args, **kwargs)
            return None
        return self.executor.submit(self._run, job, *args, **kwargs)

    def shutdown(self, wait=False):
        if self.executor is not None:
            self.executor.shutdown(wait=wait)

    def _run(self, job, *args, **kwargs):
        with self.app.app_context():
            try:
                job(*args, **kwargs)
            except Exception:
                db.session.rollback()
                logger.exception("Tracking job %s failed", getattr(job, "__name__", job))


def hall_selection_error(hall_type, hall_level, base_type):
    if hall_type not in HALL_TYPES:
        return f"hall_type must be one of {', '.join(HALL_TYPES)}"
    if base_type not in BASE_TYPES:
        return f"base_type must be one of {', '.join(BASE_TYPES)}"
    low, high = HALL_LEVEL_RANGES[hall_type]
    if not isinstance(hall_level, int) or hall_level < low or hall_level > high:
        return f"hall_level for {hall_type} must be between {low} and {high}"
    return None


def parse_base_csv(text):
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        return None, "CSV file is empty"
    reader.fieldnames = [(name or "").strip().lower() for name in reader.fieldnames]

    rows = []
    for row in reader:
        values = {key: (value or "").strip() for key, value in row.items() if key}
        if not any(values.values()):
            continue
        rows.append(values)
    if not rows:
        return None, "CSV file is empty"

    missing = [col for col in CSV_REQUIRED_COLUMNS if col not in reader.fieldnames]
    if missing:
        return None, f"CSV must have columns: {', '.join(CSV_REQUIRED_COLUMNS)} (missing: {', '.join(missing)})"

    # Header line is line 1.
    for line_no, row in enumerate(rows, start=2):
        blank = [col for col in CSV_REQUIRED_COLUMNS if not row.get(col)]
        if blank:
            return None, f"Row {line_no} is missing a value for: {', '.join(blank)}"

    parsed = []
    for row in rows:
        entry = {col: row[col] for col in CSV_REQUIRED_COLUMNS}
        entry.update({col: row.get(col) or None for col in CSV_OPTIONAL_COLUMNS})
        parsed.append(entry)
    return parsed, None


def optimize_image(file_obj):
    # Background removal is not wired up yet; images pass through unchanged.
    return file_obj


def is_valid_ipv4(value):
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def clean_text(value):
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError("expected a string")
    return value.strip()


def parse_whole_number(value):
    # JSON booleans and floats are not whole numbers; form values arrive as strings.
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip()
        if value.isascii() and value.isdigit():
            return int(value)
    return None


def create_app(test_config=None):
    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL", "sqlite:///layout_catalog.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", secrets.token_hex(32))
    app.config["ADMIN_LOGIN_WINDOW_MINUTES"] = int(os.getenv("ADMIN_LOGIN_WINDOW_MINUTES", "60"))
    app.config["ADMIN_LOGIN_MAX_ATTEMPTS"] = int(os.getenv("ADMIN_LOGIN_MAX_ATTEMPTS", "5"))
    app.config["SESSION_TTL_MINUTES"] = int(os.getenv("SESSION_TTL_MINUTES", "60"))
    app.config["SESSION_COOKIE_SECURE"] = os.getenv("SESSION_COOKIE_SECURE", "true").lower() == "true"
    app.config["LOGIN_ATTEMPT_RETENTION_HOURS"] = int(os.getenv("LOGIN_ATTEMPT_RETENTION_HOURS", "24"))
    app.config["TRACKING_MODE"] = os.getenv("TRACKING_MODE", "background").lower()
    app.config["TRACKING_WORKERS"] = int(os.getenv("TRACKING_WORKERS", "4"))
    app.config["IMAGE_TOKEN_TTL_SECONDS"] = int(os.getenv("IMAGE_TOKEN_TTL_SECONDS", "3600"))
    app.config["CORS_ALLOW_ORIGIN"] = os.getenv("CORS_ALLOW_ORIGIN", "*")
    app.config["SQLITE_BUSY_TIMEOUT_SECONDS"] = float(os.getenv("SQLITE_BUSY_TIMEOUT_SECONDS", "30"))
    app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MAX_CONTENT_LENGTH", str(16 * 1024 * 1024)))
    app.config["TRUSTED_PROXY_COUNT"] = int(os.getenv("TRUSTED_PROXY_COUNT", "0"))

    project_root = Path(__file__).resolve().parent
    app.config["IMAGE_STORAGE_ROOT"] = os.getenv("IMAGE_STORAGE_ROOT", str(project_root / "private_storage" / "images"))

    if test_config:
        app.config.update(test_config)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        app.config.setdefault(
            "SQLALCHEMY_ENGINE_OPTIONS",
            {"connect_args": {"timeout": app.config["SQLITE_BUSY_TIMEOUT_SECONDS"], "check_same_thread": False}},
        )

    # X-Forwarded-For is only honoured for hops appended by trusted proxies.
    if app.config["TRUSTED_PROXY_COUNT"] > 0:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=app.config["TRUSTED_PROXY_COUNT"])

    images_root = Path(app.config["IMAGE_STORAGE_ROOT"]).resolve()
    images_root.mkdir(parents=True, exist_ok=True)

    db.init_app(app)

    with app.app_context():
        db.create_all()

    tracker = TrackingQueue(app, mode=app.config["TRACKING_MODE"], workers=app.config["TRACKING_WORKERS"])
    app.extensions["tracking_queue"] = tracker

    image_serializer = URLSafeTimedSerializer(app.config["SECRET_KEY"], salt="optimized-image")

    @app.after_request
    def add_response_headers(response):
        response.headers["Access-Control-Allow-Origin"] = app.config["CORS_ALLOW_ORIGIN"]
        response.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    def get_client_ip():
        return request.remote_addr or "unknown"

    def as_data():
        data = request.get_json(silent=True)
        if data is None:
            return request.form
        return data if isinstance(data, dict) else {}

    def derive_browser_fingerprint():
        parts = [
            request.headers.get("User-Agent", ""),
            request.headers.get("Accept-Language", ""),
            request.headers.get("Accept-Encoding", ""),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    def log_admin_action(admin_id, action):
        db.session.add(
            AuditLog(
                admin_user_id=admin_id,
                action=action,
                ip_address=get_client_ip(),
                device_info=request.user_agent.string or None,
            )
        )
        db.session.commit()

    def log_security_event(event_type, ip_address, severity="warning", user_id=None, details=None):
        db.session.add(
            SecurityEvent(
                event_type=event_type,
                severity=severity,
                ip_address=ip_address or "unknown",
                user_id=user_id,
                details=details,
            )
        )
        db.session.commit()

    def base_to_dict(base):
        return {
            "id": base.id,
            "name": base.name,
            "image_url": base.image_url,
            "layout_link": base.layout_link,
            "description": base.description,
            "stats": base.stats,
            "tips": base.tips,
            "hall_type": base.hall_type,
            "hall_level": base.hall_level,
            "base_type": base.base_type,
            "download_count": base.download_count,
            "average_rating": round(float(base.average_rating or 0), 2),
            "rating_count": base.rating_count,
            "created_at": isoformat(base.created_at),
            "updated_at": isoformat(base.updated_at),
        }

    def user_to_dict(user):
        return {
            "id": user.id,
            "email": user.email,
            "last_sign_in_at": isoformat(user.last_sign_in_at),
            "created_at": isoformat(user.created_at),
        }

    def session_to_dict(session):
        expires_at = as_utc(session.expires_at)
        return {
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
            "token_type": "bearer",
            "expires_in": max(int((expires_at - utcnow()).total_seconds()), 0),
            "expires_at": int(expires_at.timestamp()),
        }

    def admin_to_dict(admin):
        return {
            "id": admin.id,
            "user_id": admin.user_id,
            "allowed_ips": list(admin.allowed_ips or []),
            "is_active": admin.is_active,
            "last_login_at": isoformat(admin.last_login_at),
            "created_at": isoformat(admin.created_at),
            "updated_at": isoformat(admin.updated_at),
        }

    def attempt_to_dict(attempt):
        return {
            "id": attempt.id,
            "ip_address": attempt.ip_address,
            "user_agent": attempt.user_agent,
            "success": attempt.success,
            "created_at": isoformat(attempt.created_at),
        }

    def issue_session(user, ip_address, user_agent):
        session = Session(
            user_id=user.id,
            access_token=secrets.token_urlsafe(48),
            refresh_token=secrets.token_urlsafe(48),
            expires_at=utcnow() + timedelta(minutes=app.config["SESSION_TTL_MINUTES"]),
            device_info=user_agent,
            ip_address=ip_address,
            last_activity_at=utcnow(),
        )
        db.session.add(session)
        db.session.commit()
        return session

    def sign_in_with_password(email, password, ip_address, user_agent):
        user = User.query.filter_by(email=email).first() if email else None
        if not user or not password or not check_password_hash(user.password_hash, password):
            return None, None, "Invalid login credentials"
        if not user.is_active:
            # Disabled identities yield neither a user nor an error.
            return None, None, None
        user.last_sign_in_at = utcnow()
        session = issue_session(user, ip_address, user_agent)
        return user, session, None

    def admin_login_rate_limited(ip_address):
        window_start = utcnow() - timedelta(minutes=app.config["ADMIN_LOGIN_WINDOW_MINUTES"])
        attempts = AdminLoginAttempt.query.filter(
            AdminLoginAttempt.ip_address == ip_address,
            AdminLoginAttempt.created_at >= window_start,
        ).count()
        return attempts >= app.config["ADMIN_LOGIN_MAX_ATTEMPTS"]

    def record_admin_login_attempt(ip_address, user_agent, success):
        db.session.add(AdminLoginAttempt(ip_address=ip_address, user_agent=user_agent, success=success))
        db.session.commit()

    def auth_error(message, code, status):
        return jsonify({"error": message, "code": code}), status

    def get_access_token():
        header = request.headers.get("Authorization") or ""
        if header.lower().startswith("bearer "):
            return header[7:].strip() or None
        return request.cookies.get("session_token")

    def get_active_session():
        token = get_access_token()
        if not token:
            return None
        session = Session.query.filter_by(access_token=token).first()
        if not session:
            return None
        if as_utc(session.expires_at) < utcnow():
            db.session.delete(session)
            db.session.commit()
            return None
        session.last_activity_at = utcnow()
        db.session.commit()
        return session

    def require_admin(fn):
        @wraps(fn)
        def wrapped(*args, **kwargs):
            active_session = get_active_session()
            if not active_session:
                return jsonify({"error": "Authentication required"}), 401
            user = db.session.get(User, active_session.user_id)
            if not user:
                return jsonify({"error": "User not found"}), 401
            if not user.is_active:
                return jsonify({"error": "Account deactivated"}), 403
            admin = AdminUser.query.filter_by(user_id=user.id, is_active=True).first()
            if not admin:
                return auth_error("Access denied. Admin privileges required.", "ACCESS_DENIED", 403)
            if admin.allowed_ips and get_client_ip() not in admin.allowed_ips:
                return auth_error("Access denied from this IP address.", "IP_NOT_ALLOWED", 403)
            request.current_user = user
            request.current_admin = admin
            request.current_session = active_session
            return fn(*args, **kwargs)

        return wrapped

    @app.route("/functions/admin-auth", methods=["POST", "OPTIONS"])
    def admin_auth():
        if request.method == "OPTIONS":
            return make_response("", 204)

        try:
            data = request.get_json(silent=True)
            if not isinstance(data, dict):
                data = {}
            email = str(data.get("email") or "").strip().lower()
            password = str(data.get("password") or "")
            ip_address = str(data.get("ip_address") or "").strip() or get_client_ip()
            user_agent = str(data.get("user_agent") or request.user_agent.string or "") or None

            logger.info("Admin login attempt from IP: %s", ip_address)

            if admin_login_rate_limited(ip_address):
                logger.warning("Rate limit exceeded for IP: %s", ip_address)
                record_admin_login_attempt(ip_address, user_agent, False)
                log_security_event("admin_login_rate_limited", ip_address, details=f"email={email}")
                return auth_error("Too many login attempts. Please try again later.", "RATE_LIMITED", 429)

            user, session, error = sign_in_with_password(email, password, ip_address, user_agent)
            record_admin_login_attempt(ip_address, user_agent, error is None)

            if error:
                logger.info("Failed login attempt for %s: %s", email, error)
                return auth_error("Invalid credentials", "INVALID_CREDENTIALS", 401)
            if not user:
                return auth_error("Authentication failed", "AUTH_FAILED", 401)

            admin = AdminUser.query.filter_by(user_id=user.id, is_active=True).first()
            if not admin:
                logger.warning("Non-admin user attempted access: %s", email)
                log_security_event("admin_access_denied", ip_address, user_id=user.id, details=f"email={email}")
                return auth_error("Access denied. Admin privileges required.", "ACCESS_DENIED", 403)

            if admin.allowed_ips and ip_address not in admin.allowed_ips:
                logger.warning("IP not whitelisted for admin %s: %s", email, ip_address)
                log_security_event("admin_ip_not_allowed", ip_address, user_id=user.id, details=f"email={email}")
                return auth_error("Access denied from this IP address.", "IP_NOT_ALLOWED", 403)

            admin.last_login_at = utcnow()
            db.session.commit()
            logger.info("Successful admin login: %s", email)

            resp = make_response(
                jsonify({"user": user_to_dict(user), "session": session_to_dict(session), "admin_data": admin_to_dict(admin)})
            )
            resp.set_cookie(
                "session_token",
                session.access_token,
                httponly=True,
                secure=app.config["SESSION_COOKIE_SECURE"],
                samesite="Strict",
                max_age=app.config["SESSION_TTL_MINUTES"] * 60,
            )
            return resp
        except Exception:
            db.session.rollback()
            logger.exception("Admin auth error")
            return auth_error("Internal server error", "INTERNAL_ERROR", 500)

    @app.get("/halls")
    def hall_counts():
        rows = (
            db.session.query(BaseLayout.hall_type, BaseLayout.hall_level, func.count(BaseLayout.id))
            .group_by(BaseLayout.hall_type, BaseLayout.hall_level)
            .all()
        )
        return jsonify({f"{hall_type}{hall_level}": int(count) for hall_type, hall_level, count in rows})

    @app.get("/bases")
    def list_bases():
        hall_type = (request.args.get("hall_type") or "").strip().upper()
        hall_level = request.args.get("hall_level", type=int)
        base_types = [t.strip().upper() for t in request.args.getlist("base_type") if t.strip()]
        q = (request.args.get("q") or "").strip().lower()
        sort_by = (request.args.get("sort") or "newest").strip().lower()
        page = max(request.args.get("page", 1, type=int), 1)
        per_page = min(max(request.args.get("per_page", 20, type=int), 1), 100)

        if hall_type and hall_type not in HALL_TYPES:
            return jsonify({"error": f"hall_type must be one of {', '.join(HALL_TYPES)}"}), 400
        unknown = [t for t in base_types if t not in BASE_TYPES]
        if unknown:
            return jsonify({"error": f"Unknown base_type: {', '.join(unknown)}"}), 400

        query = BaseLayout.query
        if hall_type:
            query = query.filter(BaseLayout.hall_type == hall_type)
        if hall_level is not None:
            query = query.filter(BaseLayout.hall_level == hall_level)
        if base_types:
            query = query.filter(BaseLayout.base_type.in_(base_types))
        if q:
            query = query.filter(
                func.lower(BaseLayout.name).contains(q, autoescape=True)
                | func.lower(BaseLayout.description).contains(q, autoescape=True)
            )

        if sort_by == "most_downloaded":
            query = query.order_by(BaseLayout.download_count.desc(), BaseLayout.created_at.desc())
        elif sort_by == "highest_rated":
            query = query.order_by(BaseLayout.average_rating.desc(), BaseLayout.rating_count.desc())
        else:
            query = query.order_by(BaseLayout.created_at.desc(), BaseLayout.id.desc())

        total = query.count()
        rows = query.offset((page - 1) * per_page).limit(per_page).all()
        return jsonify(
            {
                "items": [base_to_dict(b) for b in rows],
                "pagination": {
                    "page": page,
                    "per_page": per_page,
                    "total": total,
                    "pages": (total + per_page - 1) // per_page,
                },
            }
        )

    @app.get("/bases/<int:base_id>")
    def base_detail(base_id):
        base = db.get_or_404(BaseLayout, base_id)
        return jsonify(base_to_dict(base))

    @app.post("/bases/<int:base_id>/ratings")
    def submit_rating(base_id):
        base = db.get_or_404(BaseLayout, base_id)
        data = as_data()
        rating = parse_whole_number(data.get("rating"))
        if rating is None:
            return jsonify({"error": "Rating must be an integer from 1 to 5."}), 400
        if rating < 1 or rating > 5:
            return jsonify({"error": "Rating must be between 1 and 5."}), 400

        try:
            fingerprint = clean_text(data.get("fingerprint"))[:128] or derive_browser_fingerprint()
        except ValueError:
            return jsonify({"error": "fingerprint must be a string"}), 400
        db.session.add(
            Rating(
                base_id=base.id,
                rating=rating,
                ip_address=get_client_ip(),
                browser_fingerprint=fingerprint,
            )
        )
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return jsonify({"error": "You have already rated this base.", "code": "ALREADY_RATED"}), 409

        db.session.refresh(base)
        return jsonify(
            {
                "message": "Thank you for rating this base!",
                "average_rating": round(float(base.average_rating or 0), 2),
                "rating_count": base.rating_count,
            }
        ), 201

    @app.get("/bases/<int:base_id>/download")
    def download_base(base_id):
        base = db.get_or_404(BaseLayout, base_id)
        layout_link = base.layout_link
        tracker.submit(record_download, base.id, get_client_ip(), request.user_agent.string or None)
        return redirect(layout_link)

    @app.get("/admin/session")
    @require_admin
    def admin_session():
        return jsonify(
            {
                "user": user_to_dict(request.current_user),
                "admin_data": admin_to_dict(request.current_admin),
                "expires_at": isoformat(request.current_session.expires_at),
            }
        )

    @app.post("/admin/logout")
    @require_admin
    def admin_logout():
        db.session.delete(request.current_session)
        db.session.commit()
        resp = make_response(jsonify({"message": "Logged out"}))
        resp.delete_cookie("session_token")
        return resp

    @app.post("/admin/bases/import")
    @require_admin
    def import_bases_csv():
        uploaded = request.files.get("file")
        if not uploaded:
            return jsonify({"error": "file is required"}), 400

        hall_type = (request.form.get("hall_type") or "TH").strip().upper()
        base_type = (request.form.get("base_type") or "WAR").strip().upper()
        try:
            hall_level = int(request.form.get("hall_level") or 17)
        except ValueError:
            return jsonify({"error": "hall_level must be an integer"}), 400
        error = hall_selection_error(hall_type, hall_level, base_type)
        if error:
            return jsonify({"error": error}), 400

        try:
            text = uploaded.read().decode("utf-8-sig")
        except UnicodeDecodeError:
            return jsonify({"error": "CSV file must be UTF-8 encoded"}), 400

        rows, error = parse_base_csv(text)
        if error:
            return jsonify({"error": error}), 400

        bases = [
            BaseLayout(
                name=row["name"],
                image_url=row["image_path"],
                layout_link=row["layout_link"],
                description=row["description"],
                stats=row["stats"],
                tips=row["tips"],
                hall_type=hall_type,
                hall_level=hall_level,
                base_type=base_type,
                download_count=0,
                average_rating=0,
                rating_count=0,
            )
            for row in rows
        ]
        try:
            db.session.add_all(bases)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Bulk import of %d bases failed", len(bases))
            return jsonify({"error": "Import failed"}), 500

        log_admin_action(request.current_admin.id, f"bases_import:{len(bases)}:{hall_type}{hall_level}:{base_type}")
        return jsonify(
            {
                "message": f"Successfully uploaded {len(bases)} bases.",
                "inserted": len(bases),
                "ids": [b.id for b in bases],
            }
        ), 201

    @app.get("/admin/bases")
    @require_admin
    def admin_list_bases():
        q = (request.args.get("q") or "").strip().lower()
        hall_type = (request.args.get("hall_type") or "ALL").strip().upper()
        base_type = (request.args.get("base_type") or "ALL").strip().upper()
        query = BaseLayout.query
        if q:
            query = query.filter(
                func.lower(BaseLayout.name).contains(q, autoescape=True)
                | func.lower(BaseLayout.description).contains(q, autoescape=True)
            )
        if hall_type != "ALL":
            query = query.filter(BaseLayout.hall_type == hall_type)
        if base_type != "ALL":
            query = query.filter(BaseLayout.base_type == base_type)
        bases = query.order_by(BaseLayout.created_at.desc(), BaseLayout.id.desc()).all()
        return jsonify([base_to_dict(b) for b in bases])

    @app.patch("/admin/bases/<int:base_id>")
    @require_admin
    def update_base(base_id):
        base = db.get_or_404(BaseLayout, base_id)
        data = as_data()

        changes = {}
        for field in ("name", "layout_link", "image_url", "description", "stats", "tips", "hall_type", "base_type"):
            if field not in data:
                continue
            try:
                changes[field] = clean_text(data.get(field))
            except ValueError:
                db.session.rollback()
                return jsonify({"error": f"{field} must be a string"}), 400

        for field in ("name", "layout_link"):
            if field in changes and not changes[field]:
                db.session.rollback()
                return jsonify({"error": f"{field} cannot be empty"}), 400

        hall_type = (changes.pop("hall_type", "") or base.hall_type).upper()
        base_type = (changes.pop("base_type", "") or base.base_type).upper()
        hall_level = base.hall_level
        if "hall_level" in data:
            hall_level = parse_whole_number(data.get("hall_level"))
            if hall_level is None:
                db.session.rollback()
                return jsonify({"error": "hall_level must be an integer"}), 400
        error = hall_selection_error(hall_type, hall_level, base_type)
        if error:
            db.session.rollback()
            return jsonify({"error": error}), 400

        for field, value in changes.items():
            setattr(base, field, value or None)
        base.hall_type = hall_type
        base.hall_level = hall_level
        base.base_type = base_type

        db.session.commit()
        log_admin_action(request.current_admin.id, f"base_update:{base.id}")
        return jsonify(base_to_dict(base))

    @app.delete("/admin/bases/<int:base_id>")
    @require_admin
    def delete_base(base_id):
        base = db.get_or_404(BaseLayout, base_id)
        Download.query.filter_by(base_id=base.id).update({"base_id": None}, synchronize_session=False)
        Rating.query.filter_by(base_id=base.id).delete(synchronize_session=False)
        db.session.delete(base)
        db.session.commit()
        log_admin_action(request.current_admin.id, f"base_delete:{base_id}")
        return jsonify({"message": "Base deleted"})

    def write_upload(file_obj, folder):
        if not file_obj:
            return None, None, None
        safe_name = secure_filename(file_obj.filename or "")
        if not safe_name:
            return None, None, None
        unique_name = f"{secrets.token_hex(10)}-{safe_name}"
        full_path = folder / unique_name
        file_obj.save(full_path)
        return safe_name, full_path, full_path.stat().st_size

    @app.post("/admin/images/optimize")
    @require_admin
    def optimize_images():
        files = [f for f in request.files.getlist("files") if f and f.filename]
        if not files:
            return jsonify({"error": "files are required"}), 400

        processed = []
        skipped = []
        for file_obj in files:
            if Path(file_obj.filename).suffix.lower() not in IMAGE_EXTENSIONS:
                skipped.append(file_obj.filename)
                continue
            original_name, stored_path, size = write_upload(optimize_image(file_obj), images_root)
            if not stored_path:
                skipped.append(file_obj.filename)
                continue
            token = image_serializer.dumps({"file": stored_path.name})
            processed.append({"file_name": original_name, "file_size": size, "url": f"/admin/images/{token}"})

        return jsonify(
            {
                "message": f"Successfully processed {len(processed)} out of {len(files)} images.",
                "processed": processed,
                "skipped": skipped,
            }
        )

    @app.get("/admin/images/<token>")
    @require_admin
    def get_optimized_image(token):
        try:
            payload = image_serializer.loads(token, max_age=app.config["IMAGE_TOKEN_TTL_SECONDS"])
        except BadSignature:
            return jsonify({"error": "Invalid or expired image token"}), 400
        path = (images_root / str(payload.get("file") or "")).resolve()
        if path.parent != images_root or not path.is_file():
            return jsonify({"error": "Image unavailable"}), 404
        return send_file(path)

    @app.get("/admin/security/allowed-ips")
    @require_admin
    def list_allowed_ips():
        return jsonify({"allowed_ips": list(request.current_admin.allowed_ips or [])})

    @app.post("/admin/security/allowed-ips")
    @require_admin
    def add_allowed_ip():
        data = as_data()
        ip = data.get("ip")
        ip = ip.strip() if isinstance(ip, str) else ""
        if not is_valid_ipv4(ip):
            return jsonify({"error": "Please enter a valid IPv4 address."}), 400
        admin = request.current_admin
        current = list(admin.allowed_ips or [])
        if ip in current:
            return jsonify({"error": "IP address is already allowed."}), 409
        admin.allowed_ips = current + [ip]
        db.session.commit()
        log_admin_action(admin.id, f"allowed_ip_add:{ip}")
        return jsonify(
            {
                "allowed_ips": list(admin.allowed_ips),
                "includes_current_ip": get_client_ip() in admin.allowed_ips,
            }
        ), 201

    @app.delete("/admin/security/allowed-ips/<ip>")
    @require_admin
    def remove_allowed_ip(ip):
        admin = request.current_admin
        current = list(admin.allowed_ips or [])
        if ip not in current:
            return jsonify({"error": "IP address is not in the allow-list."}), 404
        admin.allowed_ips = [existing for existing in current if existing != ip]
        db.session.commit()
        log_admin_action(admin.id, f"allowed_ip_remove:{ip}")
        return jsonify({"allowed_ips": list(admin.allowed_ips)})

    @app.get("/admin/security/current-ip")
    @require_admin
    def current_ip():
        return jsonify({"ip": get_client_ip()})

    @app.get("/admin/security/login-attempts")
    @require_admin
    def admin_login_attempts():
        rows = AdminLoginAttempt.query.order_by(AdminLoginAttempt.created_at.desc(), AdminLoginAttempt.id.desc()).limit(50).all()
        recent_failed = AdminLoginAttempt.query.filter(
            AdminLoginAttempt.success.is_(False),
            AdminLoginAttempt.created_at >= utcnow() - timedelta(hours=24),
        ).count()
        return jsonify({"attempts": [attempt_to_dict(r) for r in rows], "recent_failed_24h": recent_failed})

    @app.get("/admin/security/events")
    @require_admin
    def admin_security_events():
        rows = SecurityEvent.query.order_by(SecurityEvent.created_at.desc(), SecurityEvent.id.desc()).limit(500).all()
        return jsonify(
            [
                {
                    "id": r.id,
                    "event_type": r.event_type,
                    "severity": r.severity,
                    "ip_address": r.ip_address,
                    "user_id": r.user_id,
                    "details": r.details,
                    "created_at": isoformat(r.created_at),
                }
                for r in rows
            ]
        )

    @app.post("/admin/security/cleanup")
    @require_admin
    def run_login_attempt_cleanup():
        removed = cleanup_old_login_attempts(app.config["LOGIN_ATTEMPT_RETENTION_HOURS"])
        log_admin_action(request.current_admin.id, f"login_attempt_cleanup:{removed}")
        return jsonify(
            {
                "old_login_attempts_removed": removed,
                "retention_hours": app.config["LOGIN_ATTEMPT_RETENTION_HOURS"],
            }
        )

    @app.get("/admin/analytics")
    @require_admin
    def admin_analytics():
        now = utcnow()
        top_downloaded = (
            BaseLayout.query.filter(BaseLayout.download_count > 0)
            .order_by(BaseLayout.download_count.desc(), BaseLayout.id.asc())
            .limit(10)
            .all()
        )
        top_rated = (
            BaseLayout.query.filter(BaseLayout.rating_count > 0)
            .order_by(BaseLayout.average_rating.desc(), BaseLayout.rating_count.desc())
            .limit(10)
            .all()
        )

        line_chart = []
        for i in range(13, -1, -1):
            day = (now - timedelta(days=i)).date()
            day_start = datetime.combine(day, datetime.min.time(), tzinfo=timezone.utc)
            count = Download.query.filter(
                Download.created_at >= day_start,
                Download.created_at < day_start + timedelta(days=1),
            ).count()
            line_chart.append({"date": day.isoformat(), "downloads": count})

        return jsonify(
            {
                "totals": {
                    "bases": BaseLayout.query.count(),
                    "downloads": Download.query.count(),
                    "ratings": Rating.query.count(),
                    "downloads_daily": Download.query.filter(Download.created_at >= now - timedelta(days=1)).count(),
                },
                "top_downloaded": [
                    {"base_id": b.id, "name": b.name, "download_count": b.download_count} for b in top_downloaded
                ],
                "top_rated": [
                    {
                        "base_id": b.id,
                        "name": b.name,
                        "average_rating": round(float(b.average_rating or 0), 2),
                        "rating_count": b.rating_count,
                    }
                    for b in top_rated
                ],
                "charts": {"line_downloads": line_chart},
            }
        )

    @app.get("/admin/audit-logs")
    @require_admin
    def admin_audit_logs():
        logs = AuditLog.query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(100).all()
        return jsonify(
            [
                {
                    "admin_user_id": log.admin_user_id,
                    "action": log.action,
                    "ip_address": log.ip_address,
                    "device_info": log.device_info,
                    "created_at": isoformat(log.created_at),
                }
                for log in logs
            ]
        )

    @app.cli.command("create-admin")
    @click.argument("email")
    @click.argument("password")
    @click.option("--allow-ip", "allowed_ips", multiple=True, help="Restrict admin logins to this IPv4 address.")
    def create_admin_command(email, password, allowed_ips):
        email = email.strip().lower()
        if len(password) < 12 or password.lower() == password or password.upper() == password or not any(
            ch.isdigit() for ch in password
        ):
            raise click.BadParameter("Admin password does not meet strength requirements", param_hint="PASSWORD")
        invalid = [ip for ip in allowed_ips if not is_valid_ipv4(ip)]
        if invalid:
            raise click.BadParameter(f"Invalid IPv4 address: {', '.join(invalid)}", param_hint="--allow-ip")

        user = User.query.filter_by(email=email).first()
        if not user:
            user = User(email=email, password_hash=generate_password_hash(password))
            db.session.add(user)
        else:
            user.password_hash = generate_password_hash(password)
            user.is_active = True
        db.session.flush()

        admin = AdminUser.query.filter_by(user_id=user.id).first()
        if not admin:
            admin = AdminUser(user_id=user.id)
            db.session.add(admin)
        admin.is_active = True
        admin.allowed_ips = list(dict.fromkeys(allowed_ips))
        db.session.commit()
        click.echo(f"Admin {email} is active (allowed IPs: {', '.join(admin.allowed_ips) or 'any'})")

    @app.cli.command("deactivate-admin")
    @click.argument("email")
    def deactivate_admin_command(email):
        user = User.query.filter_by(email=email.strip().lower()).first()
        admin = AdminUser.query.filter_by(user_id=user.id).first() if user else None
        if not admin:
            raise click.ClickException(f"No admin account for {email}")
        admin.is_active = False
        db.session.commit()
        click.echo(f"Admin {email} deactivated")

    @app.cli.command("cleanup-login-attempts")
    def cleanup_login_attempts_command():
        removed = cleanup_old_login_attempts(app.config["LOGIN_ATTEMPT_RETENTION_HOURS"])
        click.echo(f"Removed {removed} login attempts")

    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    app.run(host="0.0.0.0", port=5000, debug=True)
