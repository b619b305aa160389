import os
import secrets
from datetime import date
from functools import wraps

from flask import (
    Flask,
    current_app,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
    Response,
)
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.security import check_password_hash, generate_password_hash

from .categories import CategoryCatalog
from .db import (
    DATABASE_ERRORS,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_POOL_IDLE_TIMEOUT,
    DEFAULT_POOL_MAX_SIZE,
    connect_db,
    open_pool,
    parse_database_config,
)
from .db_migrations import FALLBACK_CATEGORY_NAME, apply_migrations, get_db_health, seed_default_categories
from .identity import GUEST_MODE_COOKIE, GUEST_STORAGE_COOKIE, access_redirect, resolve_identity
from .local_store import LocalStore, TableStorage, utc_now_text
from .records import (
    LocalRecordStore,
    RecordConflict,
    RecordNotFound,
    RecordService,
    RemoteRecordStore,
    ValidationError,
    build_dashboard,
)
from .spreadsheet import (
    export_filename,
    import_candidates,
    is_allowed_spreadsheet,
    parse_spreadsheet,
    render_savings_csv,
    render_transactions_csv,
)
from .sync import replay_local_store, sync_records


MAX_UPLOAD_BYTES = 10 * 1024 * 1024
GUEST_COOKIE_MAX_AGE = 60 * 60 * 24 * 365


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


def json_endpoint(failure_message):
    """Map domain errors on a JSON route to status codes.

    Anything unexpected is logged with its traceback and answered with a
    500 carrying ``failure_message``.
    """

    def decorator(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            try:
                return view(**kwargs)
            except ValidationError as exc:
                return jsonify({"error": str(exc)}), 400
            except RecordNotFound as exc:
                return jsonify({"error": str(exc)}), 404
            except RecordConflict as exc:
                return jsonify({"error": str(exc)}), 409
            except HTTPException:
                raise
            except Exception:
                current_app.logger.exception(failure_message)
                db = g.get("db")
                if db is not None:
                    db.rollback()
                return jsonify({"error": failure_message}), 500

        return wrapped_view

    return decorator


def request_payload():
    payload = request.get_json(silent=True)
    if payload is None:
        payload = request.form.to_dict()
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.path.join(app.instance_path, "nexus_finance.sqlite"),
        MAX_CONTENT_LENGTH=MAX_UPLOAD_BYTES,
        DB_POOL_MAX_SIZE=DEFAULT_POOL_MAX_SIZE,
        DB_POOL_IDLE_TIMEOUT=DEFAULT_POOL_IDLE_TIMEOUT,
        DB_CONNECT_TIMEOUT=DEFAULT_CONNECT_TIMEOUT,
        FALLBACK_CATEGORY=FALLBACK_CATEGORY_NAME,
        GUEST_COOKIE_MAX_AGE=GUEST_COOKIE_MAX_AGE,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(
            app.config["DATABASE"],
            pool_settings={
                "max_size": app.config["DB_POOL_MAX_SIZE"],
                "idle_timeout": app.config["DB_POOL_IDLE_TIMEOUT"],
                "connect_timeout": app.config["DB_CONNECT_TIMEOUT"],
            },
        )

    def get_pool(config):
        pool = app.extensions.get("nexus_finance_pool")
        if pool is None:
            pool = open_pool(config)
            app.extensions["nexus_finance_pool"] = pool
        return pool

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            config = database_config()
            try:
                pool = get_pool(config) if config["backend"] == "postgres" else None
                g.db = connect_db(config, pool=pool)
            except DATABASE_ERRORS + (OSError, RuntimeError) as exc:
                message = f"Unable to open {config['backend']} database {config['database_name']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        config = database_config()
        try:
            apply_migrations(config)
            app.config["DB_INIT_ERROR"] = None
        except DATABASE_ERRORS + (OSError, RuntimeError) as exc:
            message = f"Failed to initialize {config['backend']} database {config['database_name']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.cli.command("seed-db")
    def seed_db_command():
        db = get_db()
        seed_default_categories(db)
        db.commit()
        print("Seeded default categories.")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except DATABASE_ERRORS + (OSError, RuntimeError) as exc:
            app.logger.error("Database health check failed: %s", exc)
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    def find_account(user_id):
        return get_db().execute("SELECT id, username FROM users WHERE id = ?", (user_id,)).fetchone()

    def render_db_init_error_response():
        message = app.config.get("DB_INIT_ERROR") or "Database initialization failed."
        return jsonify({"error": message}), 500

    def issue_storage_token():
        token = secrets.token_urlsafe(24)
        g.identity.storage_token = token
        g.new_storage_token = token
        return token

    @app.before_request
    def load_identity():
        if app.config.get("DB_INIT_ERROR") and request.endpoint != "db_health":
            return render_db_init_error_response()

        g.new_storage_token = None
        g.identity = resolve_identity(session.get("user_id"), request.cookies, find_account)
        if g.identity.is_guest and not g.identity.storage_token:
            issue_storage_token()

        target = access_redirect(g.identity, request.endpoint)
        if target is not None:
            return redirect(url_for(target))
        return None

    @app.after_request
    def store_guest_cookie(response):
        token = g.get("new_storage_token")
        if token:
            response.set_cookie(
                GUEST_STORAGE_COOKIE,
                token,
                max_age=app.config["GUEST_COOKIE_MAX_AGE"],
                httponly=True,
                samesite="Lax",
            )
        return response

    @app.errorhandler(RequestEntityTooLarge)
    def upload_too_large(_exc):
        limit_mb = app.config["MAX_CONTENT_LENGTH"] / (1024 * 1024)
        return jsonify({"error": f"File size must be less than {limit_mb:g}MB"}), 413

    def guest_local_store(token=None):
        return LocalStore(TableStorage(get_db(), token or g.identity.storage_token))

    def category_catalog():
        return CategoryCatalog(get_db())

    def record_service():
        if "record_service" not in g:
            if g.identity.is_account:
                store = RemoteRecordStore(get_db(), g.identity.account_id)
            else:
                store = LocalRecordStore(guest_local_store())
            g.record_service = RecordService(store, category_catalog())
        return g.record_service

    def account_service(account_id):
        return RecordService(RemoteRecordStore(get_db(), account_id), category_catalog())

    def sync_guest_storage(account_id):
        token = request.cookies.get(GUEST_STORAGE_COOKIE)
        if not token:
            return None
        local_store = guest_local_store(token)
        if local_store.guest_identity(create=False) is None:
            return None
        report = replay_local_store(local_store, account_service(account_id))
        app.logger.info(
            "Synced guest storage into account %s: %s savings, %s transactions",
            account_id,
            report["tabungan"]["succeeded"],
            report["transaksi"]["succeeded"],
        )
        return report

    def account_payload(account):
        return {"id": account["id"], "username": account["username"], "isGuest": False}

    def start_account_session(account, status=200):
        session.clear()
        session["user_id"] = account["id"]
        report = sync_guest_storage(account["id"])
        response = jsonify({"user": account_payload(account), "sync": report})
        response.status_code = status
        response.delete_cookie(GUEST_MODE_COOKIE)
        return response

    def read_credentials():
        payload = request_payload()
        username = str(payload.get("username") or "").strip()
        password = str(payload.get("password") or "")
        if not username:
            raise ValidationError("Username is required.")
        if not password:
            raise ValidationError("Password is required.")
        return username, password

    @app.route("/")
    def index():
        return render_template("index.html", identity=g.identity)

    @app.route("/login")
    def login():
        return render_template("login.html")

    @app.post("/auth/register")
    @json_endpoint("Failed to register")
    def auth_register():
        username, password = read_credentials()
        db = get_db()
        if db.execute("SELECT id FROM users WHERE username = ?", (username,)).fetchone() is not None:
            raise ValidationError("User already exists.")

        db.execute(
            "INSERT INTO users (username, password_hash, created_at) VALUES (?, ?, ?)",
            (username, generate_password_hash(password), utc_now_text()),
        )
        db.commit()
        account = db.execute("SELECT id, username FROM users WHERE username = ?", (username,)).fetchone()
        return start_account_session(account, status=201)

    @app.post("/auth/login")
    @json_endpoint("Failed to login")
    def auth_login():
        username, password = read_credentials()
        user = get_db().execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        if user is None or not check_password_hash(user["password_hash"], password):
            return jsonify({"error": "Incorrect username or password."}), 401
        return start_account_session(user)

    @app.post("/auth/logout")
    def auth_logout():
        session.clear()
        response = jsonify({"message": "Logged out"})
        response.delete_cookie(GUEST_MODE_COOKIE)
        return response

    @app.post("/auth/guest")
    @json_endpoint("Failed to start guest session")
    def auth_guest():
        token = g.identity.storage_token or issue_storage_token()
        guest = guest_local_store(token).guest_identity()
        response = jsonify({"user": guest.to_dict()})
        response.set_cookie(GUEST_MODE_COOKIE, "true", max_age=app.config["GUEST_COOKIE_MAX_AGE"], samesite="Lax")
        return response

    @app.route("/auth/user", methods=("GET", "PUT", "DELETE"))
    @json_endpoint("Failed to handle user request")
    def auth_user():
        identity = g.identity
        if not identity.is_identified:
            return jsonify({"error": "Not authenticated"}), 401

        if request.method == "DELETE":
            if identity.storage_token:
                local_store = guest_local_store()
                guest = local_store.guest_identity(create=False)
                if guest is not None:
                    local_store.clear_records(guest.id)
                local_store.reset_identity()
            return jsonify({"message": "User reset"})

        if identity.is_account:
            db = get_db()
            if request.method == "PUT":
                username = str(request_payload().get("username") or "").strip()
                if not username:
                    raise ValidationError("Username is required.")
                taken = db.execute(
                    "SELECT id FROM users WHERE username = ? AND id != ?",
                    (username, identity.account_id),
                ).fetchone()
                if taken is not None:
                    raise ValidationError("User already exists.")
                db.execute("UPDATE users SET username = ? WHERE id = ?", (username, identity.account_id))
                db.commit()
            return jsonify({"user": account_payload(find_account(identity.account_id))})

        local_store = guest_local_store()
        if request.method == "PUT":
            payload = request_payload()
            guest = local_store.update_profile(name=payload.get("name"), email=payload.get("email"))
        else:
            guest = local_store.guest_identity()
        return jsonify({"user": guest.to_dict()})

    @app.route("/transactions", methods=("GET", "POST", "PUT", "DELETE"))
    @json_endpoint("Failed to process transactions")
    def transactions():
        service = record_service()
        if request.method == "POST":
            return jsonify(service.create_transaction(request_payload())), 201
        if request.method == "PUT":
            return jsonify(service.update_transaction(request_payload()))
        if request.method == "DELETE":
            record_id = request.args.get("id")
            if record_id is None:
                record_id = (request.get_json(silent=True) or {}).get("id")
            service.delete_transaction(record_id)
            return jsonify({"message": "Transaction deleted"})
        return jsonify(service.list_transactions())

    @app.route("/savings", methods=("GET", "POST", "PUT"))
    @json_endpoint("Failed to process savings")
    def savings():
        service = record_service()
        if request.method == "POST":
            return jsonify(service.create_savings(request_payload())), 201
        if request.method == "PUT":
            return jsonify(service.update_savings(request_payload()))
        return jsonify(service.list_savings())

    @app.put("/savings/balance")
    @json_endpoint("Failed to update savings balance")
    def savings_balance():
        return jsonify(record_service().update_savings_balance(request_payload()))

    @app.delete("/savings/<record_id>")
    @json_endpoint("Failed to delete savings")
    def delete_savings(record_id):
        record_service().delete_savings(record_id)
        return jsonify({"message": "Savings deleted"})

    @app.route("/categories", methods=("GET", "POST"))
    @json_endpoint("Failed to process categories")
    def categories():
        catalog = category_catalog()
        if request.method == "POST":
            return jsonify(catalog.create(request_payload())), 201
        return jsonify(catalog.list())

    @app.get("/dashboard")
    @json_endpoint("Failed to fetch dashboard data")
    def dashboard():
        return jsonify(build_dashboard(record_service().list_transactions()))

    @app.get("/export/transactions")
    @json_endpoint("Failed to export transactions")
    def export_transactions():
        service = record_service()
        today = date.today()
        content = render_transactions_csv(
            service.list_transactions(order_by="tanggal"),
            service.list_savings(order_by="nama"),
            category_catalog().names_by_id(),
            today,
        )
        return Response(
            content,
            mimetype="text/csv",
            headers={
                "Content-Disposition": f'attachment; filename="{export_filename("Laporan_Keuangan", today)}"'
            },
        )

    @app.get("/export/savings")
    @json_endpoint("Failed to export savings")
    def export_savings():
        today = date.today()
        content = render_savings_csv(record_service().list_savings(order_by="nama"), today)
        return Response(
            content,
            mimetype="text/csv",
            headers={
                "Content-Disposition": f'attachment; filename="{export_filename("Laporan_Tabungan", today)}"'
            },
        )

    @app.post("/import/transactions")
    @json_endpoint("Failed to import transactions")
    def import_transactions():
        upload = request.files.get("file")
        if upload is None or not upload.filename:
            raise ValidationError("No file uploaded")
        if not is_allowed_spreadsheet(upload.filename):
            raise ValidationError("Only .xlsx and .xls files are supported")

        file_bytes = upload.read()
        if len(file_bytes) > app.config["MAX_CONTENT_LENGTH"]:
            raise RequestEntityTooLarge()

        fallback_name = app.config["FALLBACK_CATEGORY"]
        parsed = parse_spreadsheet(file_bytes, upload.filename, fallback_name=fallback_name)
        result = import_candidates(parsed, record_service(), category_catalog(), fallback_name=fallback_name)
        app.logger.info(
            "Imported %s of %s rows from %s with %s errors",
            result["imported"],
            result["total"],
            upload.filename,
            len(result["errors"]),
        )
        return jsonify(result)

    @app.post("/sync")
    @json_endpoint("Failed to sync data")
    def sync():
        if not g.identity.is_account:
            return jsonify({"error": "Login required to sync guest data"}), 403

        payload = request.get_json(silent=True) or {}
        service = record_service()
        if "storage" in payload:
            storage = payload["storage"]
            if not isinstance(storage, dict):
                raise ValidationError("storage must be an object of string values")
            remaining = {str(key): str(value) for key, value in storage.items()}
            report = replay_local_store(LocalStore(remaining), service)
            report["storage"] = remaining
            return jsonify(report)

        if "tabungan" in payload or "transaksi" in payload:
            savings_records = payload.get("tabungan") or []
            transaction_records = payload.get("transaksi") or []
            if not isinstance(savings_records, list) or not isinstance(transaction_records, list):
                raise ValidationError("tabungan and transaksi must be lists")
            return jsonify(sync_records(service, savings_records, transaction_records))

        report = sync_guest_storage(g.identity.account_id)
        if report is None:
            raise ValidationError("No guest data to sync")
        return jsonify(report)

    @app.route("/dev/reset-db", methods=("POST",))
    def dev_reset_db():
        dev_enabled = app.debug or os.environ.get("ENABLE_DEV_DB_RESET") == "1"
        if not dev_enabled:
            return jsonify({"error": "DEV ONLY: database reset is disabled."}), 404

        db = g.pop("db", None)
        if db is not None:
            db.close()

        if database_config()["backend"] == "sqlite":
            db_path = app.config["DATABASE"]
            if os.path.exists(db_path):
                os.remove(db_path)

        init_db()
        session.clear()
        return jsonify({"message": "DEV ONLY: database reset complete."})

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
