from __future__ import annotations

import datetime as dt
import logging
import os
import re
from functools import wraps
from pathlib import Path
from typing import Any, Dict, List, Optional

from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    send_from_directory,
    session,
    url_for,
)

from stockbook import config as app_config
from stockbook import db as adb
from stockbook.errors import NotFoundError, OverbookingError, ValidationError
from stockbook.services import activity as activity_svc
from stockbook.services import auth as auth_svc
from stockbook.services import bookings as booking_svc
from stockbook.services import catalog as catalog_svc
from stockbook.services import customers as customer_svc
from stockbook.services import imports as import_svc
from stockbook.services import notify as notify_svc
from stockbook.services import photos as photo_svc
from stockbook.services import products as product_svc
from stockbook.services.stock import bookable_quantity, stock_status

logger = logging.getLogger(__name__)

_SAFE_NAME_RX = re.compile(r"[^A-Za-z0-9_.\-]+")

ALLOWED_IMPORT_EXTS = {".csv"}
ALLOWED_PHOTO_EXTS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp"}


def _sanitize_filename(name: str) -> str:
    basename = Path(name).name
    cleaned = _SAFE_NAME_RX.sub("_", basename)
    cleaned = cleaned.strip("._")
    return cleaned or "upload"


def _wants_json_response() -> bool:
    """Detect if the current request expects a JSON payload back."""
    if request.path.startswith("/api/") or request.is_json:
        return True
    accept = (request.headers.get("Accept") or "").lower()
    if "application/json" in accept:
        return True
    xrw = (request.headers.get("X-Requested-With") or "").lower()
    if xrw in {"fetch", "xmlhttprequest"}:
        return True
    if request.headers.get("HX-Request"):
        return True
    return False


def _error(message: str, status: int = 400, **extra):
    payload: Dict[str, Any] = {"ok": False, "error": message}
    if extra:
        payload.update(extra)
    return jsonify(payload), status


def _int_arg(name: str) -> Optional[int]:
    raw = request.args.get(name)
    try:
        return int(raw) if raw not in (None, "") else None
    except ValueError:
        return None


def _booking_items_from_form() -> List[Dict[str, Any]]:
    pids = request.form.getlist("product_id")
    qtys = request.form.getlist("quantity")
    items = []
    for pid, qty in zip(pids, qtys):
        if not (pid or "").strip() and not (qty or "").strip():
            continue
        items.append({"product_id": pid, "quantity": qty})
    return items


def create_app() -> Flask:
    app = Flask(__name__)
    app.config["SECRET_KEY"] = app_config.SECRET_KEY
    adb.init_db()
    app.config.setdefault("MAX_CONTENT_LENGTH", 20 * 1024 * 1024)  # 20 MB uploads limit

    # ===== Session auth =====
    @app.before_request
    def load_current_user():
        g.user = None
        uid = session.get("user_id")
        if uid is not None:
            with adb.db() as conn:
                g.user = auth_svc.get_user(conn, uid)
            if g.user is None:
                session.clear()

    def _actor() -> Optional[Dict[str, Any]]:
        if not g.get("user"):
            return None
        return {"id": g.user["id"], "username": g.user["username"]}

    def _deny(message: str, status: int, back: Optional[str] = None):
        if _wants_json_response():
            return _error(message, status)
        flash(message, "danger")
        if status == 401:
            return redirect(url_for("login", next=request.full_path))
        return redirect(back or url_for("index"))

    def login_required(fn):
        @wraps(fn)
        def wrapped(*args, **kwargs):
            if not g.get("user"):
                return _deny("Please log in first", 401)
            return fn(*args, **kwargs)
        return wrapped

    def admin_required(fn):
        @wraps(fn)
        def wrapped(*args, **kwargs):
            if not g.get("user"):
                return _deny("Please log in first", 401)
            if not auth_svc.is_admin(g.user):
                return _deny("Admins only", 403)
            return fn(*args, **kwargs)
        return wrapped

    def write_required(fn):
        @wraps(fn)
        def wrapped(*args, **kwargs):
            if not g.get("user"):
                return _deny("Please log in first", 401)
            if not auth_svc.can_write(g.user):
                return _deny("You have read-only access", 403)
            return fn(*args, **kwargs)
        return wrapped

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        if _wants_json_response():
            return _error(str(e), 404)
        flash(str(e), "danger")
        return redirect(url_for("index"))

    @app.context_processor
    def inject_user():
        user = g.get("user")
        return {
            "current_user": user,
            "is_admin": auth_svc.is_admin(user),
            "can_write": auth_svc.can_write(user),
            "status_labels": booking_svc.STATUS_LABELS,
            "low_threshold": app_config.LOW_STOCK_THRESHOLD,
        }

    @app.template_global()
    def photo_url(path: Optional[str]) -> Optional[str]:
        if not photo_svc.photo_exists(path):
            return None
        return url_for("serve_media", subpath=os.path.relpath(path, "media"))

    @app.route("/login", methods=["GET", "POST"])
    def login():
        if request.method == "POST":
            with adb.db() as conn:
                user = auth_svc.authenticate(
                    conn, request.form.get("username", ""), request.form.get("password", "")
                )
            if not user:
                logger.info("Failed login for %r", request.form.get("username"))
                flash("Invalid username or password", "danger")
                return render_template("login.html"), 401
            session.clear()
            session["user_id"] = user["id"]
            nxt = request.args.get("next") or ""
            if nxt.startswith("/") and not nxt.startswith("//"):
                return redirect(nxt)
            return redirect(url_for("index"))
        return render_template("login.html")

    @app.route("/logout")
    def logout():
        session.clear()
        return redirect(url_for("login"))

    @app.route("/")
    @login_required
    def index():
        if not auth_svc.is_admin(g.user):
            return redirect(url_for("my_products"))
        with adb.db() as conn:
            counts = product_svc.stock_counts(conn)
            stats = {
                "products": counts["total"],
                "low_stock": counts["low"] + counts["out"],
                "customers": len(customer_svc.list_customers(conn)),
                "bookings": booking_svc.count_bookings(conn),
            }
            low_rows = product_svc.list_products(conn, stock="low", sort="available_stock")
            out_rows = product_svc.list_products(conn, stock="out", sort="name")
            recent = activity_svc.recent_activity(conn, limit=10)
            latest = booking_svc.list_bookings(conn, limit=5)
        return render_template(
            "overview.html",
            stats=stats,
            low_rows=low_rows,
            out_rows=out_rows,
            recent=recent,
            latest=latest,
        )

    # Local media files (product photos)
    @app.route("/media/<path:subpath>")
    @login_required
    def serve_media(subpath: str):
        base = Path("media").resolve()
        target = (base / subpath).resolve()
        if not str(target).startswith(str(base)):
            abort(403)
        if not target.exists():
            abort(404)
        return send_from_directory(str(base), subpath)

    # ===== Products =====
    @app.route("/products")
    @admin_required
    def products():
        q = request.args.get("q", "").strip()
        manufacturer_id = _int_arg("manufacturer_id")
        stock = request.args.get("stock", "all")
        sort = request.args.get("sort", "name")
        direction = request.args.get("dir", "asc")
        with adb.db() as conn:
            rows = product_svc.list_products(
                conn, q=q, manufacturer_id=manufacturer_id, stock=stock, sort=sort, direction=direction
            )
            makers = catalog_svc.manufacturer_choices(conn)
        return render_template(
            "products.html",
            rows=rows,
            manufacturers=makers,
            q=q,
            manufacturer_id=manufacturer_id,
            stock=stock,
            sort=sort,
            dir=direction,
            sortable=product_svc.SORTABLE_FIELDS,
        )

    def _product_form(mode: str, row: Optional[Dict[str, Any]] = None, status: int = 200):
        with adb.db() as conn:
            makers = catalog_svc.manufacturer_choices(conn)
            cats = catalog_svc.list_categories(conn)
        return render_template(
            "product_form.html", mode=mode, row=row or {}, manufacturers=makers, categories=cats
        ), status

    @app.route("/products/add", methods=["GET", "POST"])
    @admin_required
    def product_add():
        if request.method == "POST":
            try:
                with adb.db() as conn:
                    pid = product_svc.create_product(conn, request.form, actor=_actor())
            except ValidationError as e:
                flash(str(e), "danger")
                return _product_form("add", request.form.to_dict(), 400)
            flash("Product created", "success")
            return redirect(url_for("product_edit", pid=pid))
        return _product_form("add", {"manufacturer_id": _int_arg("manufacturer_id")})

    @app.route("/products/<int:pid>/edit", methods=["GET", "POST"])
    @admin_required
    def product_edit(pid: int):
        with adb.db() as conn:
            current = product_svc.get_product(conn, pid)
        if request.method == "POST":
            try:
                with adb.db() as conn:
                    product_svc.update_product(conn, pid, request.form, actor=_actor())
            except ValidationError as e:
                flash(str(e), "danger")
                row = dict(current)
                row.update(request.form.to_dict())
                return _product_form("edit", row, 400)
            flash("Product saved", "success")
            return redirect(url_for("products"))
        return _product_form("edit", current)

    @app.route("/products/<int:pid>/delete", methods=["POST"])
    @admin_required
    def product_delete(pid: int):
        try:
            with adb.db() as conn:
                product_svc.delete_product(conn, pid, actor=_actor())
        except ValidationError as e:
            if _wants_json_response():
                return _error(str(e), 409)
            flash(str(e), "danger")
            return redirect(url_for("products"))
        if _wants_json_response():
            return jsonify({"ok": True})
        flash("Product deleted", "success")
        return redirect(url_for("products"))

    @app.route("/products/<int:pid>/photo", methods=["POST"])
    @admin_required
    def product_photo(pid: int):
        file = request.files.get("photo")
        if not file or file.filename == "":
            return _deny("Choose an image to upload", 400, url_for("product_edit", pid=pid))
        ext = Path(file.filename).suffix.lower()
        if ext not in ALLOWED_PHOTO_EXTS:
            return _deny("Unsupported image type", 400, url_for("product_edit", pid=pid))
        with adb.db() as conn:
            product = product_svc.get_product(conn, pid)
        app_config.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
        tmp_path = app_config.UPLOAD_DIR / f"tmp_photo_{pid}{ext}"
        file.save(tmp_path)
        try:
            rel = photo_svc.store_product_photo(tmp_path, product["model_no"])
        except ValidationError as e:
            return _deny(str(e), 400, url_for("product_edit", pid=pid))
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        with adb.db() as conn:
            product_svc.set_photo_path(conn, pid, rel)
        if _wants_json_response():
            return jsonify({"ok": True, "photo_url": photo_url(rel)})
        flash("Photo uploaded", "success")
        return redirect(url_for("product_edit", pid=pid))

    @app.route("/products/import", methods=["POST"])
    @admin_required
    def products_import():
        file = request.files.get("file")
        if not file or file.filename == "":
            return _deny("Choose a CSV file to import", 400, url_for("products"))
        original = file.filename
        if Path(original).suffix.lower() not in ALLOWED_IMPORT_EXTS:
            return _deny("Only .csv files can be imported", 400, url_for("products"))
        ts = dt.datetime.now().strftime("%Y%m%d_%H%M%S")
        app_config.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
        stored = app_config.UPLOAD_DIR / f"{ts}_{_sanitize_filename(original)}"
        file.save(stored)
        try:
            with adb.db() as conn:
                stats = import_svc.import_products_csv(conn, str(stored), original, actor=_actor())
        except ValidationError as e:
            stored.unlink()
            return _deny(str(e), 400, url_for("products"))
        if _wants_json_response():
            return jsonify({"ok": True, **stats})
        flash(
            f"Imported {stats['imported']} products ({stats['created']} new, {stats['updated']} updated)",
            "success" if stats["imported"] else "warning",
        )
        for err in stats["errors"][:20]:
            flash(err, "danger")
        if len(stats["errors"]) > 20:
            flash(f"... and {len(stats['errors']) - 20} more rows with errors", "danger")
        return redirect(url_for("products"))

    def _csv_response(body: str, name: str) -> Response:
        return Response(
            body,
            mimetype="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{name}"'},
        )

    @app.route("/products/export")
    @admin_required
    def products_export():
        with adb.db() as conn:
            body = import_svc.export_products_csv(
                conn,
                manufacturer_id=_int_arg("manufacturer_id"),
                q=request.args.get("q", ""),
                stock=request.args.get("stock", "all"),
            )
        return _csv_response(body, f"products_{dt.date.today().isoformat()}.csv")

    # ===== Manufacturers =====
    @app.route("/manufacturers")
    @admin_required
    def manufacturers():
        q = request.args.get("q", "").strip()
        with adb.db() as conn:
            rows = catalog_svc.list_manufacturers(conn, q=q)
        return render_template("manufacturers.html", rows=rows, q=q)

    @app.route("/manufacturers/<int:mid>")
    @admin_required
    def manufacturer_detail(mid: int):
        q = request.args.get("q", "").strip()
        stock = request.args.get("stock", "all")
        sort = request.args.get("sort", "name")
        direction = request.args.get("dir", "asc")
        with adb.db() as conn:
            detail = catalog_svc.manufacturer_detail(
                conn, mid, q=q, stock=stock, sort=sort, direction=direction
            )
        return render_template(
            "manufacturer_detail.html",
            q=q,
            stock=stock,
            sort=sort,
            dir=direction,
            sortable=product_svc.SORTABLE_FIELDS,
            **detail,
        )

    @app.route("/manufacturers/<int:mid>/export")
    @admin_required
    def manufacturer_export(mid: int):
        with adb.db() as conn:
            maker = catalog_svc.get_manufacturer(conn, mid)
            body = import_svc.export_products_csv(
                conn,
                manufacturer_id=mid,
                low_threshold=app_config.LOW_STOCK_THRESHOLD * 2,
                q=request.args.get("q", ""),
                stock=request.args.get("stock", "all"),
            )
        name = _sanitize_filename(maker["factory_name"])
        return _csv_response(body, f"{name}_products_{dt.date.today().isoformat()}.csv")

    @app.route("/manufacturers/add", methods=["GET", "POST"])
    @admin_required
    def manufacturer_add():
        if request.method == "POST":
            try:
                with adb.db() as conn:
                    mid = catalog_svc.create_manufacturer(conn, request.form, actor=_actor())
            except ValidationError as e:
                flash(str(e), "danger")
                return render_template("manufacturer_form.html", mode="add", row=request.form), 400
            flash("Manufacturer created", "success")
            return redirect(url_for("manufacturer_detail", mid=mid))
        return render_template("manufacturer_form.html", mode="add", row={})

    @app.route("/manufacturers/<int:mid>/edit", methods=["GET", "POST"])
    @admin_required
    def manufacturer_edit(mid: int):
        with adb.db() as conn:
            current = catalog_svc.get_manufacturer(conn, mid)
        if request.method == "POST":
            try:
                with adb.db() as conn:
                    catalog_svc.update_manufacturer(conn, mid, request.form, actor=_actor())
            except ValidationError as e:
                flash(str(e), "danger")
                return render_template("manufacturer_form.html", mode="edit", row={**current, **request.form.to_dict()}), 400
            flash("Manufacturer saved", "success")
            return redirect(url_for("manufacturer_detail", mid=mid))
        return render_template("manufacturer_form.html", mode="edit", row=current)

    @app.route("/manufacturers/<int:mid>/delete", methods=["POST"])
    @admin_required
    def manufacturer_delete(mid: int):
        with adb.db() as conn:
            catalog_svc.delete_manufacturer(conn, mid, actor=_actor())
        if _wants_json_response():
            return jsonify({"ok": True})
        flash("Manufacturer deleted", "success")
        return redirect(url_for("manufacturers"))

    # ===== Categories =====
    @app.route("/categories")
    @admin_required
    def categories():
        with adb.db() as conn:
            rows = catalog_svc.list_categories(conn)
        return render_template("categories.html", rows=rows)

    @app.route("/categories/add", methods=["GET", "POST"])
    @admin_required
    def category_add():
        if request.method == "POST":
            try:
                with adb.db() as conn:
                    catalog_svc.create_category(conn, request.form, actor=_actor())
            except ValidationError as e:
                flash(str(e), "danger")
                return render_template("category_form.html", mode="add", row=request.form), 400
            flash("Category created", "success")
            return redirect(url_for("categories"))
        return render_template("category_form.html", mode="add", row={})

    @app.route("/categories/<int:cid>/edit", methods=["GET", "POST"])
    @admin_required
    def category_edit(cid: int):
        with adb.db() as conn:
            current = catalog_svc.get_category(conn, cid)
        if request.method == "POST":
            try:
                with adb.db() as conn:
                    catalog_svc.update_category(conn, cid, request.form, actor=_actor())
            except ValidationError as e:
                flash(str(e), "danger")
                return render_template("category_form.html", mode="edit", row={**current, **request.form.to_dict()}), 400
            flash("Category saved", "success")
            return redirect(url_for("categories"))
        return render_template("category_form.html", mode="edit", row=current)

    @app.route("/categories/<int:cid>/delete", methods=["POST"])
    @admin_required
    def category_delete(cid: int):
        try:
            with adb.db() as conn:
                catalog_svc.delete_category(conn, cid, actor=_actor())
        except ValidationError as e:
            if _wants_json_response():
                return _error(str(e), 409)
            flash(str(e), "danger")
            return redirect(url_for("categories"))
        if _wants_json_response():
            return jsonify({"ok": True})
        flash("Category deleted", "success")
        return redirect(url_for("categories"))

    # ===== Customers =====
    @app.route("/customers")
    @admin_required
    def customers():
        q = request.args.get("q", "").strip()
        with adb.db() as conn:
            rows = customer_svc.list_customers(conn, q=q)
        return render_template("customers.html", rows=rows, q=q)

    @app.route("/customers/add", methods=["GET", "POST"])
    @write_required
    def customer_add():
        back = url_for("customers") if auth_svc.is_admin(g.user) else url_for("my_bookings")
        if request.method == "POST":
            try:
                with adb.db() as conn:
                    cid = customer_svc.create_customer(conn, request.form, actor=_actor())
            except ValidationError as e:
                if _wants_json_response():
                    return _error(str(e))
                flash(str(e), "danger")
                return render_template("customer_form.html", mode="add", row=request.form, back=back), 400
            if _wants_json_response():
                return jsonify({"ok": True, "id": cid})
            flash("Customer created", "success")
            return redirect(back)
        return render_template("customer_form.html", mode="add", row={}, back=back)

    @app.route("/customers/<int:cid>/edit", methods=["GET", "POST"])
    @admin_required
    def customer_edit(cid: int):
        with adb.db() as conn:
            current = customer_svc.get_customer(conn, cid)
        back = url_for("customers")
        if request.method == "POST":
            try:
                with adb.db() as conn:
                    customer_svc.update_customer(conn, cid, request.form, actor=_actor())
            except ValidationError as e:
                flash(str(e), "danger")
                return render_template("customer_form.html", mode="edit", row={**current, **request.form.to_dict()}, back=back), 400
            flash("Customer saved", "success")
            return redirect(back)
        return render_template("customer_form.html", mode="edit", row=current, back=back)

    @app.route("/customers/<int:cid>/delete", methods=["POST"])
    @admin_required
    def customer_delete(cid: int):
        try:
            with adb.db() as conn:
                customer_svc.delete_customer(conn, cid, actor=_actor())
        except ValidationError as e:
            if _wants_json_response():
                return _error(str(e), 409)
            flash(str(e), "danger")
            return redirect(url_for("customers"))
        if _wants_json_response():
            return jsonify({"ok": True})
        flash("Customer deleted", "success")
        return redirect(url_for("customers"))

    # ===== Bookings =====
    @app.route("/bookings")
    @admin_required
    def bookings():
        q = request.args.get("q", "").strip()
        with adb.db() as conn:
            groups = booking_svc.grouped_by_customer(conn, q=q)
        return render_template("bookings.html", groups=groups, q=q)

    @app.route("/bookings/customer/<int:cid>")
    @admin_required
    def customer_bookings(cid: int):
        with adb.db() as conn:
            data = booking_svc.customer_bookings(conn, cid)
        return render_template("customer_bookings.html", **data)

    def _booking_form(mode: str, booking: Dict[str, Any], status: int = 200):
        with adb.db() as conn:
            customers_list = customer_svc.customer_choices(conn)
        back = url_for("bookings") if auth_svc.is_admin(g.user) else url_for("my_bookings")
        return render_template(
            "booking_form.html",
            mode=mode,
            booking=booking,
            customers=customers_list,
            statuses=booking_svc.STATUSES,
            back=back,
        ), status

    def _posted_booking() -> Dict[str, Any]:
        with adb.db() as conn:
            items = []
            for item in _booking_items_from_form():
                row = None
                if str(item["product_id"]).isdigit():
                    row = conn.execute(
                        "SELECT model_no, name FROM product WHERE id=?", (int(item["product_id"]),)
                    ).fetchone()
                items.append({
                    **item,
                    "model_no": row["model_no"] if row else "",
                    "name": row["name"] if row else "",
                })
        return {
            "customer_id": request.form.get("customer_id"),
            "status": request.form.get("status"),
            "booking_date": request.form.get("booking_date"),
            "notes": request.form.get("notes"),
            "items": items,
        }

    @app.route("/bookings/add", methods=["GET", "POST"])
    @write_required
    def booking_add():
        if request.method == "POST":
            try:
                with adb.db() as conn:
                    bid = booking_svc.create_booking(
                        conn,
                        request.form.get("customer_id"),
                        request.form.get("status"),
                        _booking_items_from_form(),
                        booking_date=request.form.get("booking_date"),
                        notes=request.form.get("notes"),
                        actor=_actor(),
                    )
            except ValidationError as e:
                flash(str(e), "danger")
                return _booking_form("add", _posted_booking(), 409 if isinstance(e, OverbookingError) else 400)
            flash(f"Booking #{bid} created", "success")
            if auth_svc.is_admin(g.user):
                return redirect(url_for("bookings"))
            return redirect(url_for("my_bookings"))
        return _booking_form(
            "add",
            {
                "customer_id": _int_arg("customer_id"),
                "status": "pending",
                "booking_date": dt.date.today().isoformat(),
                "items": [],
            },
        )

    @app.route("/bookings/<int:bid>/edit", methods=["GET", "POST"])
    @admin_required
    def booking_edit(bid: int):
        with adb.db() as conn:
            current = booking_svc.get_booking(conn, bid)
        if request.method == "POST":
            try:
                with adb.db() as conn:
                    booking_svc.update_booking(
                        conn,
                        bid,
                        request.form.get("customer_id"),
                        request.form.get("status"),
                        _booking_items_from_form(),
                        booking_date=request.form.get("booking_date"),
                        notes=request.form.get("notes"),
                        actor=_actor(),
                    )
            except ValidationError as e:
                flash(str(e), "danger")
                posted = _posted_booking()
                posted["id"] = bid
                return _booking_form("edit", posted, 409 if isinstance(e, OverbookingError) else 400)
            flash(f"Booking #{bid} saved", "success")
            return redirect(url_for("customer_bookings", cid=current["customer_id"]))
        return _booking_form("edit", current)

    @app.route("/bookings/<int:bid>/delete", methods=["POST"])
    @admin_required
    def booking_delete(bid: int):
        with adb.db() as conn:
            current = booking_svc.delete_booking(conn, bid, actor=_actor())
        if _wants_json_response():
            return jsonify({"ok": True})
        flash(f"Booking #{bid} deleted", "success")
        return redirect(url_for("customer_bookings", cid=current["customer_id"]))

    # ===== Users =====
    @app.route("/users")
    @admin_required
    def users():
        with adb.db() as conn:
            rows = auth_svc.list_users(conn)
        return render_template("users.html", rows=rows, columns=auth_svc.AVAILABLE_COLUMNS)

    def _user_payload() -> Dict[str, Any]:
        data = request.form.to_dict()
        data["assigned_columns"] = request.form.getlist("assigned_columns")
        return data

    def _user_form(mode: str, row: Dict[str, Any], status: int = 200):
        return render_template(
            "user_form.html",
            mode=mode,
            row=row,
            columns=auth_svc.AVAILABLE_COLUMNS,
            roles=auth_svc.ROLES,
            access_levels=auth_svc.ACCESS_LEVELS,
        ), status

    @app.route("/users/add", methods=["GET", "POST"])
    @admin_required
    def user_add():
        if request.method == "POST":
            data = _user_payload()
            try:
                with adb.db() as conn:
                    auth_svc.create_user(conn, data, actor=_actor())
            except ValidationError as e:
                flash(str(e), "danger")
                return _user_form("add", data, 400)
            flash("User created", "success")
            return redirect(url_for("users"))
        return _user_form("add", {"role": "user", "access_level": "read", "assigned_columns": []})

    @app.route("/users/<int:uid>/edit", methods=["GET", "POST"])
    @admin_required
    def user_edit(uid: int):
        with adb.db() as conn:
            current = auth_svc.get_user(conn, uid)
        if not current:
            abort(404)
        if request.method == "POST":
            data = _user_payload()
            try:
                with adb.db() as conn:
                    auth_svc.update_user(conn, uid, data, actor=_actor())
            except ValidationError as e:
                flash(str(e), "danger")
                return _user_form("edit", {**current, **data}, 400)
            flash("User saved", "success")
            return redirect(url_for("users"))
        return _user_form("edit", current)

    @app.route("/users/<int:uid>/delete", methods=["POST"])
    @admin_required
    def user_delete(uid: int):
        if uid == g.user["id"]:
            flash("You cannot delete your own account", "danger")
            return redirect(url_for("users"))
        try:
            with adb.db() as conn:
                auth_svc.delete_user(conn, uid, actor=_actor())
        except ValidationError as e:
            flash(str(e), "danger")
            return redirect(url_for("users"))
        flash("User deleted", "success")
        return redirect(url_for("users"))

    # ===== Activity and notifications =====
    @app.route("/activity")
    @admin_required
    def activity():
        with adb.db() as conn:
            rows = activity_svc.recent_activity(conn)
        return render_template("activity.html", rows=rows)

    @app.route("/settings/notify", methods=["GET", "POST"])
    @admin_required
    def notify_settings():
        uid = g.user["id"]
        if request.method == "POST":
            try:
                with adb.db() as conn:
                    for t in notify_svc.NOTIFY_TYPES:
                        notify_svc.set_notify_mode(conn, uid, t, request.form.get(t, "off"))
            except ValidationError as e:
                flash(str(e), "danger")
                return redirect(url_for("notify_settings"))
            flash("Notification settings saved", "success")
            return redirect(url_for("notify_settings"))
        with adb.db() as conn:
            modes = notify_svc.get_notify_modes(conn, uid)
        return render_template(
            "notify_settings.html",
            modes=modes,
            types=notify_svc.NOTIFY_LABELS,
            mode_choices=notify_svc.NOTIFY_MODES,
        )

    # ===== Regular user views =====
    @app.route("/my/products")
    @login_required
    def my_products():
        q = request.args.get("q", "").strip()
        cols = auth_svc.allowed_columns(g.user)
        with adb.db() as conn:
            rows = product_svc.list_products(conn, q=q)
        return render_template(
            "my_products.html",
            rows=rows,
            q=q,
            columns=[(c, auth_svc.AVAILABLE_COLUMNS[c]) for c in cols],
        )

    @app.route("/my/bookings")
    @login_required
    def my_bookings():
        with adb.db() as conn:
            rows = booking_svc.list_bookings(conn)
        return render_template("my_bookings.html", rows=rows)

    # ===== JSON API =====
    @app.get("/api/products/search")
    @login_required
    def api_products_search():
        q = (request.args.get("q") or "").strip()
        with adb.db() as conn:
            items = product_svc.search_products(conn, q)
        for item in items:
            item["display"] = f"{item['name']} · {item['model_no']}"
        return jsonify(items)

    @app.get("/api/products/<int:pid>/availability")
    @login_required
    def api_product_availability(pid: int):
        booking_id = _int_arg("booking_id")
        with adb.db() as conn:
            product = product_svc.get_product(conn, pid)
            bookable = bookable_quantity(conn, pid, booking_id)
        body = {
            "ok": True,
            "id": pid,
            "name": product["name"],
            "model_no": product["model_no"],
        }
        # stock figures follow the user's assigned columns
        if "available_stock" in auth_svc.allowed_columns(g.user):
            body.update(
                available_stock=product["available_stock"],
                bookable=bookable,
                status=stock_status(product["available_stock"]),
            )
        return jsonify(body)

    @app.get("/api/activity")
    @admin_required
    def api_activity():
        after = _int_arg("after")
        with adb.db() as conn:
            rows = activity_svc.recent_activity(conn, after_id=after)
            latest = activity_svc.latest_activity_id(conn)
        return jsonify({"ok": True, "items": rows, "latest_id": latest})

    @app.post("/api/bookings")
    @write_required
    def api_bookings_create():
        payload = request.get_json(silent=True)
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            return _error("Expected a JSON object", 400)
        try:
            with adb.db() as conn:
                bid = booking_svc.create_booking(
                    conn,
                    payload.get("customer_id"),
                    payload.get("status"),
                    payload.get("items") or [],
                    booking_date=payload.get("booking_date"),
                    notes=payload.get("notes"),
                    actor=_actor(),
                )
                booking = booking_svc.get_booking(conn, bid)
        except OverbookingError as e:
            return _error(str(e), 409, products=e.products)
        except ValidationError as e:
            return _error(str(e), 400)
        return jsonify({"ok": True, "booking": booking}), 201

    return app
