import calendar
import csv
import io
import math
import os
import re
from datetime import date, datetime, timedelta
from functools import wraps

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, redirect, render_template, request, session, url_for
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash

import calculators
from audit import log_event
from db import close_db, get_db, init_db, resolve_db_path
from dose_schedule import ValidationError, parse_rule, rule_to_columns, schedule_medications
from nutrition import NutritionError, fetch_nutrition
from rate_limit import init_rate_limiter, rate_limited
from sanitize import sanitize_text
from trends import bucket_weeks, current_week_count, weekly_counts

load_dotenv()

app = Flask(__name__)

# Configuration
DEFAULT_SECRET_KEY = "change_this_secret"


def warn_default_secret(key):
    if key == DEFAULT_SECRET_KEY:
        print("Warning: SECRET_KEY is not set; sessions are signed with the built-in default key.", flush=True)
        return True
    return False


app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", DEFAULT_SECRET_KEY)
warn_default_secret(app.config["SECRET_KEY"])
app.config["DATABASE"] = resolve_db_path()
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=1)

# Behind a reverse proxy mounted under a prefix (X-Forwarded-Prefix) url_for keeps the prefix
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)
app.teardown_appcontext(close_db)
init_rate_limiter(app)

PORT = int(os.environ.get("PORT", 8000))

PAGE_LIMIT_MAX = 50
PAGE_LIMIT_DEFAULT = 25
CYCLE_MIN, CYCLE_MAX = 20, 60
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

DB_ERROR = "Database connection error. Check your settings and ensure the DB is created."

ACHIEVEMENT_COLUMNS = "id, title, category, metric, amount, notes, created_at"


# --- Helpers ---

def current_user():
    return session.get("user")


@app.context_processor
def inject_user():
    return {"user": current_user()}


@app.template_filter("dose_time")
def dose_time(value):
    return value.strftime("%a %d %b %H:%M") if value else ""


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if current_user():
            return view(*args, **kwargs)
        return redirect(url_for("login"))
    return wrapped


def api_login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if current_user():
            return view(*args, **kwargs)
        return jsonify({"error": "Unauthorized"}), 401
    return wrapped


def to_int(value, default=None):
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def page_args():
    page = max(1, to_int(request.args.get("page"), 1))
    limit = min(PAGE_LIMIT_MAX, max(1, to_int(request.args.get("limit"), PAGE_LIMIT_DEFAULT)))
    return page, limit, (page - 1) * limit


def is_valid_password(pw):
    """At least 8 chars with lowercase, uppercase, digit and special character."""
    if not pw or len(pw) < 8:
        return False
    return (
        re.search(r"[a-z]", pw) is not None
        and re.search(r"[A-Z]", pw) is not None
        and re.search(r"\d", pw) is not None
        and re.search(r"[^A-Za-z0-9]", pw) is not None
    )


def filtered_achievements(user_id, category, metric, limit, offset):
    where = "user_id = ?"
    params = [user_id]
    if category:
        where += " AND category = ?"
        params.append(category)
    if metric:
        where += " AND metric = ?"
        params.append(metric)

    conn = get_db()
    rows = conn.execute(
        f"SELECT {ACHIEVEMENT_COLUMNS} FROM achievements WHERE {where} "
        "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        params + [limit, offset]
    ).fetchall()
    total = conn.execute(f"SELECT COUNT(*) FROM achievements WHERE {where}", params).fetchone()[0]
    return [dict(r) for r in rows], total


def validate_achievement(form):
    """Returns (clean_values, errors) for an achievement submitted by form or JSON."""
    title = sanitize_text(form.get("title"), max_len=100)
    category = sanitize_text(form.get("category"), max_len=50)
    metric = sanitize_text(form.get("metric"), max_len=20)
    notes = sanitize_text(form.get("notes"), max_len=500)

    errors = []
    if not title:
        errors.append("title is required and must be <=100 chars")
    if not category:
        errors.append("category is required and must be <=50 chars")
    if not metric:
        errors.append("metric is required and must be <=20 chars")
    try:
        amount = float(form.get("amount"))
    except (TypeError, ValueError):
        amount = None
    if amount is None or not math.isfinite(amount):
        amount = None
        errors.append("amount must be a number")

    return {"title": title, "category": category, "metric": metric, "amount": amount, "notes": notes or None}, errors


def insert_achievement(user_id, values):
    conn = get_db()
    conn.execute(
        "INSERT INTO achievements (user_id, title, category, metric, amount, notes) VALUES (?, ?, ?, ?, ?, ?)",
        (user_id, values["title"], values["category"], values["metric"], values["amount"], values["notes"])
    )
    conn.commit()


# --- Home ---

@app.route('/')
def index():
    log_event("view_home")
    return render_template('home.html')


@app.route('/about')
def about():
    log_event("view_about")
    return render_template('about.html')


# --- Auth ---

@app.route('/register', methods=['GET'])
def register():
    if current_user():
        return redirect(url_for("index"))
    log_event("view_register")
    return render_template('register.html', error=None)


@app.route('/register', methods=['POST'])
@rate_limited(5, window=60)
def register_post():
    if current_user():
        return redirect(url_for("index"))

    username = request.form.get("username", "")
    password = request.form.get("password", "")
    confirm = request.form.get("confirm", "")
    safe_username = sanitize_text(username, max_len=50)

    if not safe_username or not password or not confirm:
        log_event("register_failed", {"reason": "missing_fields"})
        return render_template('register.html', error="Please complete all fields."), 400
    if password != confirm:
        log_event("register_failed", {"reason": "password_mismatch"})
        return render_template('register.html', error="Passwords do not match."), 400
    if not is_valid_password(password):
        log_event("register_failed", {"reason": "password_policy"})
        return render_template(
            'register.html',
            error="Password must be at least 8 chars and include lowercase, uppercase, number and special character."
        ), 400

    try:
        conn = get_db()
        exists = conn.execute("SELECT id FROM users WHERE username = ? LIMIT 1", (safe_username,)).fetchone()
        if exists:
            log_event("register_failed", {"reason": "username_exists", "username": safe_username})
            return render_template('register.html', error="Username already exists."), 409

        conn.execute(
            "INSERT INTO users (username, password_hash) VALUES (?, ?)",
            (safe_username, generate_password_hash(password))
        )
        conn.commit()
    except Exception as e:
        print(f"Register error: {e}", flush=True)
        log_event("register_failed", {"reason": "server_error", "error": str(e)})
        return render_template('register.html', error="Server error. Please try again."), 500

    log_event("register_success", {"username": safe_username})
    return redirect(url_for("login"))


@app.route('/login', methods=['GET'])
def login():
    log_event("view_login")
    return render_template('login.html', error=None)


@app.route('/login', methods=['POST'])
@rate_limited(10, window=60)
def login_post():
    username = request.form.get("username", "")
    password = request.form.get("password", "")
    safe_username = sanitize_text(username, max_len=50)

    if not safe_username or not password:
        log_event("login_failed", {"reason": "missing_fields"})
        return render_template('login.html', error="Please provide username and password."), 400

    try:
        row = get_db().execute(
            "SELECT id, username, password_hash FROM users WHERE username = ? ORDER BY id DESC LIMIT 1",
            (safe_username,)
        ).fetchone()
    except Exception as e:
        print(f"Login error: {e}", flush=True)
        log_event("login_failed", {"reason": "server_error", "error": str(e)})
        return render_template('login.html', error="Server error. Please try again."), 500

    if row is None:
        log_event("login_failed", {"reason": "no_such_user", "username": safe_username})
        return render_template('login.html', error="Invalid credentials"), 401
    if not check_password_hash(row["password_hash"], password):
        log_event("login_failed", {"reason": "bad_password", "username": safe_username})
        return render_template('login.html', error="Invalid credentials"), 401

    session.clear()
    session.permanent = True
    session["user"] = {"id": row["id"], "username": row["username"]}
    log_event("login_success", {"username": safe_username})
    return redirect(url_for("index"))


@app.route('/logout', methods=['POST'])
def logout():
    log_event("logout")
    session.clear()
    return redirect(url_for("index"))


# --- Achievements ---

@app.route('/achievements')
def achievements():
    user = current_user()
    if not user:
        log_event("view_achievements", {"loggedIn": False})
        return render_template('achievements.html', achievements=[], query='', trends=[],
                               message="Please log in to see your achievements.")

    page, limit, offset = page_args()
    category = request.args.get("category", "").strip()
    metric = request.args.get("metric", "").strip()

    try:
        rows, total = filtered_achievements(user["id"], category, metric, limit, offset)
        now = datetime.now()
        counts = weekly_counts(get_db(), user["id"], now)
        trends = bucket_weeks(counts, now)
        this_week_count = current_week_count(counts, now)
    except Exception as e:
        print(f"DB error: {e}", flush=True)
        log_event("view_achievements_error", {"error": str(e)})
        return render_template('achievements.html', achievements=[], query='', trends=[], error=DB_ERROR), 500

    log_event("view_achievements", {
        "loggedIn": True, "count": len(rows), "page": page, "limit": limit, "thisWeekCount": this_week_count
    })
    return render_template('achievements.html', achievements=rows, query='', page=page, limit=limit,
                           total=total, category=category, metric=metric, trends=trends,
                           this_week_count=this_week_count)


@app.route('/achievements/search')
def search_achievements():
    user = current_user()
    if not user:
        log_event("search_achievements", {"loggedIn": False})
        return render_template('achievements.html', achievements=[], query='', trends=[],
                               message="Please log in to search your achievements.")

    q = sanitize_text(request.args.get("q", ""), max_len=200)
    page, limit, offset = page_args()
    if not q:
        log_event("search_achievements", {"query": "", "results": 0})
        return render_template('achievements.html', achievements=[], query='', trends=[],
                               page=page, limit=limit, total=0)

    like = f"%{q}%"
    match = "user_id = ? AND (title LIKE ? OR category LIKE ? OR notes LIKE ?)"
    params = [user["id"], like, like, like]
    try:
        conn = get_db()
        rows = conn.execute(
            f"SELECT {ACHIEVEMENT_COLUMNS} FROM achievements WHERE {match} "
            "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            params + [limit, offset]
        ).fetchall()
        total = conn.execute(f"SELECT COUNT(*) FROM achievements WHERE {match}", params).fetchone()[0]
    except Exception as e:
        print(f"DB error: {e}", flush=True)
        log_event("search_achievements_error", {"error": str(e)})
        return render_template('achievements.html', achievements=[], query='', trends=[], error=DB_ERROR), 500

    log_event("search_achievements", {"query": q, "results": len(rows), "page": page, "limit": limit})
    return render_template('achievements.html', achievements=[dict(r) for r in rows], query=q, trends=[],
                           page=page, limit=limit, total=total)


@app.route('/achievements/add', methods=['GET'])
@login_required
def add_achievement():
    log_event("view_add_achievement")
    return render_template('add_achievement.html', error=None)


@app.route('/achievements/add', methods=['POST'])
@login_required
def add_achievement_post():
    form = request.form
    if not all(form.get(f, "").strip() for f in ("title", "category", "metric", "amount")):
        return render_template('add_achievement.html', error="Please fill required fields."), 400

    values, errors = validate_achievement(form)
    if values["amount"] is None:
        return render_template('add_achievement.html', error="Amount must be a number."), 400
    if errors:
        return render_template('add_achievement.html', error="Please fill required fields."), 400

    try:
        insert_achievement(current_user()["id"], values)
    except Exception as e:
        print(f"Add achievement error: {e}", flush=True)
        log_event("add_achievement_error", {"error": str(e)})
        return render_template('add_achievement.html', error="Server error. Please try again."), 500

    log_event("add_achievement", {k: values[k] for k in ("title", "category", "metric", "amount")})
    return redirect(url_for("achievements"))


@app.route('/achievements/export.csv')
@login_required
def export_achievements():
    try:
        rows = get_db().execute(
            f"SELECT {ACHIEVEMENT_COLUMNS} FROM achievements WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (current_user()["id"],)
        ).fetchall()
    except Exception as e:
        print(f"CSV export error: {e}", flush=True)
        log_event("export_csv_error", {"error": str(e)})
        return Response("Failed to export CSV", status=500, mimetype="text/plain")

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(["id", "title", "category", "metric", "amount", "notes", "created_at"])
    for r in rows:
        created = datetime.fromisoformat(r["created_at"]).isoformat()
        writer.writerow([r["id"], r["title"], r["category"], r["metric"], r["amount"], r["notes"] or "", created])

    log_event("export_csv", {"rows": len(rows)})
    return Response(
        buf.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": 'attachment; filename="achievements.csv"'}
    )


# --- Medications ---

def empty_med_form():
    return {"name": "", "dosage": "", "interval_hours": "", "freq_type": "interval",
            "time_of_day": "08:00", "days_of_week": "Mon,Thu", "notes": ""}


def load_medications(user_id, now=None):
    rows = get_db().execute(
        "SELECT id, name, dosage, interval_hours, freq_type, time_of_day, days_of_week, notes, created_at "
        "FROM medications WHERE user_id = ? ORDER BY created_at DESC, id DESC",
        (user_id,)
    ).fetchall()
    return schedule_medications(rows, now or datetime.now())


@app.route('/meds', methods=['GET'])
@login_required
def meds():
    log_event("view_meds")
    try:
        medications = load_medications(current_user()["id"])
    except Exception as e:
        print(f"Meds view error: {e}", flush=True)
        return render_template('meds.html', meds=[], error="Unable to load medications.",
                               form=empty_med_form()), 500
    return render_template('meds.html', meds=medications, error=None, form=empty_med_form())


@app.route('/meds', methods=['POST'])
@login_required
def add_med():
    form = {
        "name": sanitize_text(request.form.get("name", ""), max_len=100),
        "dosage": sanitize_text(request.form.get("dosage", ""), max_len=100),
        "notes": sanitize_text(request.form.get("notes", ""), max_len=500),
        "freq_type": sanitize_text(request.form.get("freq_type") or "interval", max_len=10).lower(),
        "interval_hours": request.form.get("interval_hours", ""),
        "time_of_day": sanitize_text(request.form.get("time_of_day") or "08:00", max_len=5),
        "days_of_week": sanitize_text(request.form.get("days_of_week") or "Mon,Thu", max_len=50),
    }

    if not form["name"]:
        return render_template('meds.html', meds=[], error="Medication name is required.", form=form), 400
    try:
        rule = parse_rule(form["freq_type"], form["interval_hours"], form["time_of_day"], form["days_of_week"])
    except ValidationError as e:
        log_event("add_medication_failed", {"reason": str(e)})
        return render_template('meds.html', meds=[], error=str(e), form=form), 400

    freq_type, interval_hours, time_of_day, days_of_week = rule_to_columns(rule)
    try:
        conn = get_db()
        conn.execute(
            "INSERT INTO medications (user_id, name, dosage, interval_hours, freq_type, time_of_day, days_of_week, notes) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (current_user()["id"], form["name"], form["dosage"] or None, interval_hours, freq_type,
             time_of_day, days_of_week, form["notes"] or None)
        )
        conn.commit()
    except Exception as e:
        print(f"Add med error: {e}", flush=True)
        return render_template('meds.html', meds=[], error="Server error. Please try again.", form=form), 500

    log_event("add_medication", {"name": form["name"], "freqType": freq_type, "intervalHours": interval_hours})
    return redirect(url_for("meds"))


# --- Period tracking ---

def month_calendar(year, month, highlighted, predicted):
    """Weeks (Sunday first) of the month with per-day flags for the template."""
    weeks = []
    for week in calendar.Calendar(firstweekday=6).monthdatescalendar(year, month):
        weeks.append([
            {
                "day": d.day,
                "in_month": d.month == month,
                "logged": d.isoformat() in highlighted,
                "predicted": d.isoformat() in predicted,
                "today": d == date.today(),
            }
            for d in week
        ])
    return weeks


def render_period(logs, error=None, form=None, status=200):
    next_window = None
    highlighted, predicted = set(), set()
    for log in logs:
        start = date.fromisoformat(log["start_date"])
        for i in range(calculators.PERIOD_WINDOW_DAYS):
            highlighted.add((start + timedelta(days=i)).isoformat())
    if logs:
        latest = logs[0]
        next_window = calculators.next_period_window(date.fromisoformat(latest["start_date"]), latest["cycle_length"])
        start = date.fromisoformat(next_window["start"])
        for i in range(calculators.PERIOD_WINDOW_DAYS):
            predicted.add((start + timedelta(days=i)).isoformat())

    today = date.today()
    cal_year = to_int(request.args.get("year"), today.year)
    cal_month = to_int(request.args.get("month"), today.month)
    if not 1 <= cal_year <= 9999:
        cal_year = today.year
    if not 1 <= cal_month <= 12:
        cal_month = today.month

    return render_template(
        'period.html', logs=logs, error=error,
        form=form or {"start_date": "", "cycle_length": calculators.DEFAULT_CYCLE_LENGTH},
        next_window=next_window, cal_year=cal_year, cal_month=cal_month,
        cal_title=f"{calendar.month_name[cal_month]} {cal_year}",
        cal_weeks=month_calendar(cal_year, cal_month, highlighted, predicted),
    ), status


@app.route('/tools/period')
def tools_period():
    return redirect(url_for("period"), code=301)


@app.route('/period', methods=['GET'])
@login_required
def period():
    log_event("view_period")
    try:
        rows = get_db().execute(
            "SELECT id, start_date, cycle_length FROM period_logs WHERE user_id = ? "
            "ORDER BY start_date DESC LIMIT 12",
            (current_user()["id"],)
        ).fetchall()
    except Exception as e:
        print(f"Period view error: {e}", flush=True)
        return render_period([], error="Unable to load period logs.", status=500)
    return render_period([dict(r) for r in rows])


@app.route('/period', methods=['POST'])
@login_required
def add_period():
    start_date = request.form.get("start_date", "").strip()
    cycle_length = to_int(request.form.get("cycle_length") or calculators.DEFAULT_CYCLE_LENGTH)
    form = {"start_date": start_date, "cycle_length": cycle_length or calculators.DEFAULT_CYCLE_LENGTH}

    valid_date = bool(DATE_RE.match(start_date))
    if valid_date:
        try:
            date.fromisoformat(start_date)
        except ValueError:
            valid_date = False
    if not valid_date:
        log_event("period_failed", {"reason": "bad_date"})
        return render_period([], error="Enter a valid start date (YYYY-MM-DD).", form=form, status=400)
    if cycle_length is None or not CYCLE_MIN <= cycle_length <= CYCLE_MAX:
        log_event("period_failed", {"reason": "bad_cycle"})
        return render_period([], error="Cycle length must be between 20 and 60 days.", form=form, status=400)

    try:
        conn = get_db()
        conn.execute(
            "INSERT INTO period_logs (user_id, start_date, cycle_length) VALUES (?, ?, ?)",
            (current_user()["id"], start_date, cycle_length)
        )
        conn.commit()
    except Exception as e:
        print(f"Period add error: {e}", flush=True)
        log_event("period_error", {"error": str(e)})
        return render_period([], error="Server error. Please try again.", form=form, status=500)

    log_event("period_add", {"start_date": start_date, "cycle_length": cycle_length})
    return redirect(url_for("period"))


# --- Calculators ---

@app.route('/tools')
def tools():
    log_event("view_tools")
    return render_template('tools.html')


@app.route('/tools/bmi', methods=['GET', 'POST'])
def bmi_tool():
    if request.method == 'GET':
        log_event("view_bmi")
        return render_template('bmi.html', result=None, error=None, height='', weight='', unit='metric')

    height = sanitize_text(request.form.get("height", ""), max_len=10)
    weight = sanitize_text(request.form.get("weight", ""), max_len=10)
    unit = sanitize_text(request.form.get("unit") or "metric", max_len=10).lower()
    try:
        result = calculators.bmi(height, weight, unit)
    except ValueError:
        log_event("bmi_calc_failed", {"height": height, "weight": weight})
        if unit == "imperial":
            error = "Please enter valid positive numbers for height (in) and weight (lb)."
        else:
            error = "Please enter valid positive numbers for height (m) and weight (kg)."
        return render_template('bmi.html', result=None, error=error, height=height, weight=weight, unit=unit), 400

    log_event("bmi_calc_success", result)
    return render_template('bmi.html', result=result, error=None, height=height, weight=weight, unit=unit)


@app.route('/tools/bmr', methods=['GET', 'POST'])
def bmr_tool():
    if request.method == 'GET':
        log_event("view_bmr")
        form = {"sex": "male", "age": "", "height": "", "weight": "", "activity": "moderate"}
        return render_template('bmr.html', result=None, error=None, form=form)

    form = {
        "sex": sanitize_text(request.form.get("sex") or "male", max_len=10).lower(),
        "age": request.form.get("age", "").strip(),
        "height": request.form.get("height", "").strip(),
        "weight": request.form.get("weight", "").strip(),
        "activity": sanitize_text(request.form.get("activity") or "moderate", max_len=20).lower(),
    }
    try:
        age = to_int(form["age"])
        if age is None:
            raise ValueError("age must be a whole number")
        result = calculators.bmr(form["sex"], age, form["height"], form["weight"], form["activity"])
    except ValueError:
        log_event("bmr_failed")
        return render_template('bmr.html', result=None, error="Please enter valid values.", form=form), 400

    log_event("bmr_success", result)
    return render_template('bmr.html', result=result, error=None, form=form)


@app.route('/tools/hr', methods=['GET', 'POST'])
def hr_tool():
    if request.method == 'GET':
        log_event("view_hr")
        return render_template('hr.html', result=None, error=None, age='')

    age = request.form.get("age", "").strip()
    try:
        if to_int(age) is None:
            raise ValueError("age must be a whole number")
        result = calculators.heart_rate_zones(to_int(age))
    except ValueError:
        log_event("hr_failed")
        return render_template('hr.html', result=None, error="Please enter a valid age.", age=age), 400

    log_event("hr_success", {"max": result["max"]})
    return render_template('hr.html', result=result, error=None, age=age)


@app.route('/tools/macros', methods=['GET', 'POST'])
def macros_tool():
    if request.method == 'GET':
        log_event("view_macros")
        return render_template('macros.html', result=None, error=None, form={"calories": "", "goal": "maintain"})

    form = {"calories": request.form.get("calories", "").strip(),
            "goal": (request.form.get("goal") or "maintain").lower()}
    try:
        if to_int(form["calories"]) is None:
            raise ValueError("calories must be a whole number")
        result = calculators.macros(to_int(form["calories"]), form["goal"])
    except ValueError:
        log_event("macros_failed")
        return render_template('macros.html', result=None, error="Enter valid daily calories.", form=form), 400

    log_event("macros_success", result)
    return render_template('macros.html', result=result, error=None, form=form)


@app.route('/tools/water', methods=['GET', 'POST'])
def water_tool():
    if request.method == 'GET':
        log_event("view_water")
        form = {"weight": "", "unit": "metric", "activity": "moderate", "climate": "temperate"}
        return render_template('water.html', result=None, error=None, form=form)

    form = {
        "weight": request.form.get("weight", "").strip(),
        "unit": (request.form.get("unit") or "metric").strip(),
        "activity": (request.form.get("activity") or "moderate").strip(),
        "climate": (request.form.get("climate") or "temperate").strip(),
    }
    try:
        result = calculators.water_intake(form["weight"], form["unit"], form["activity"], form["climate"])
    except ValueError:
        log_event("water_failed")
        return render_template('water.html', result=None, error="Enter a valid weight.", form=form), 400

    log_event("water_success", dict(form, ml=result["ml"]))
    return render_template('water.html', result=result, error=None, form=form)


@app.route('/tools/nutrition', methods=['GET', 'POST'])
def nutrition_tool():
    if request.method == 'GET':
        log_event("view_nutrition")
        return render_template('nutrition.html', error=None, items=[], q='')

    q = sanitize_text(request.form.get("q", ""), max_len=100)
    if not q:
        log_event("nutrition_failed", {"reason": "empty"})
        return render_template('nutrition.html', error='Enter a food name, e.g., "apple"', items=[], q=q), 400

    try:
        items = fetch_nutrition(q)
    except NutritionError as e:
        print(f"Nutrition API error: {e}", flush=True)
        log_event("nutrition_error", {"error": str(e)})
        return render_template('nutrition.html', error="Failed to fetch nutrition data.", items=[], q=q), 500

    log_event("nutrition_success", {"q": q, "count": len(items)})
    return render_template('nutrition.html', error=None, items=items, q=q)


# --- Audit / status ---

@app.route('/audit-log')
@login_required
def audit_log():
    try:
        rows = get_db().execute("""
            SELECT a.id, a.created_at, a.action, a.details, a.ip, a.user_agent, u.username
            FROM audit_logs a
            LEFT JOIN users u ON u.id = a.user_id
            ORDER BY a.created_at DESC, a.id DESC
            LIMIT 200
        """).fetchall()
    except Exception as e:
        print(f"Audit log view error: {e}", flush=True)
        return render_template('audit_log.html', logs=[], error="Unable to load audit log."), 500
    return render_template('audit_log.html', logs=rows, error=None)


@app.route('/status')
def status():
    result = {"db": {"connected": False}}
    try:
        ping = get_db().execute("SELECT 1 AS ok").fetchone()
        result["db"]["connected"] = bool(ping and ping["ok"] == 1)
        result["db"]["users"] = get_db().execute("SELECT COUNT(*) FROM users").fetchone()[0]
        return jsonify(result)
    except Exception as e:
        result["db"]["error"] = str(e)
        return jsonify(result), 500


# --- JSON API ---

@app.route('/api/achievements', methods=['GET'])
@api_login_required
def api_achievements():
    page, limit, offset = page_args()
    category = request.args.get("category", "").strip()
    metric = request.args.get("metric", "").strip()
    try:
        rows, total = filtered_achievements(current_user()["id"], category, metric, limit, offset)
    except Exception as e:
        print(f"API get achievements error: {e}", flush=True)
        return jsonify({"error": "Server error"}), 500
    return jsonify({"page": page, "limit": limit, "total": total, "items": rows})


@app.route('/api/achievements', methods=['POST'])
@rate_limited(20, window=60)
@api_login_required
def api_add_achievement():
    payload = request.get_json(silent=True)
    if payload is None:
        payload = request.form
    elif not isinstance(payload, dict):
        return jsonify({"errors": ["body must be a JSON object"]}), 400
    values, errors = validate_achievement(payload)
    if errors:
        return jsonify({"errors": errors}), 400

    try:
        insert_achievement(current_user()["id"], values)
    except Exception as e:
        print(f"API add achievement error: {e}", flush=True)
        log_event("api_add_achievement_error", {"error": str(e)})
        return jsonify({"error": "Server error"}), 500

    log_event("api_add_achievement", {k: values[k] for k in ("title", "category", "metric", "amount")})
    return jsonify({"ok": True}), 201


@app.route('/api/trends/weekly')
@api_login_required
def api_weekly_trends():
    """
    Return the 8-week achievement trend for the chart, oldest week first.
    """
    now = datetime.now()
    try:
        counts = weekly_counts(get_db(), current_user()["id"], now)
    except Exception as e:
        print(f"Weekly trends error: {e}", flush=True)
        return jsonify({"error": "Server error"}), 500
    return jsonify({"items": bucket_weeks(counts, now)})


@app.route('/api/meds')
@api_login_required
def api_meds():
    try:
        medications = load_medications(current_user()["id"])
    except Exception as e:
        print(f"API meds error: {e}", flush=True)
        return jsonify({"error": "Server error"}), 500

    for med in medications:
        med["schedule"] = [d.isoformat() for d in med["schedule"]]
        med["next_due"] = med["next_due"].isoformat() if med["next_due"] else None
    return jsonify({"items": medications})


@app.errorhandler(404)
def not_found(e):
    log_event("not_found", {"url": request.full_path.rstrip("?")})
    return render_template('404.html'), 404


@app.cli.command("init-db")
def init_db_command():
    """Create the tables in the configured database."""
    init_db(app.config["DATABASE"])
    print(f"Initialized database at {app.config['DATABASE']}")


if __name__ == '__main__':
    init_db(app.config["DATABASE"])
    print(f"[{datetime.now()}] App running on http://localhost:{PORT}", flush=True)
    app.run(port=PORT, debug=True)
