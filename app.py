"""
AI Masterclass Site - Flask Application
Landing page with the Ava chat widget, gated masterclass replay, JSON functions
used by the widget, and the admin dashboard for instructions, knowledge base,
chat logs and analytics.
"""

import os
import hmac
from io import BytesIO
from datetime import datetime, timedelta, timezone
from functools import wraps
from time import perf_counter
import logging
from logging.handlers import RotatingFileHandler

from flask import (
    Flask,
    g,
    render_template,
    request,
    redirect,
    url_for,
    flash,
    send_file,
    jsonify,
)
from flask_login import (
    LoginManager,
    UserMixin,
    login_user,
    logout_user,
    login_required,
)
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.security import check_password_hash
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration

from config import Config
from services import analytics_service, knowledge_service, masterclass_service
from services.chat_service import answer_chat, require_chat_fields, track_question
from services.completion_gateway import CompletionGateway
from services.errors import AppError, UpstreamError, ValidationError
from services.intake_flow import GREETING, STARTER_QUESTIONS, FlowSettings, IntakeFlow
from services.intake_sessions import IntakeSessionRepository
from services.lead_service import LeadNotifier, forward_form_data
from services.session_context import SessionContext
from services.side_effects import best_effort
from services.store import SqliteRecordStore, build_store

# Initialize Flask app
app = Flask(__name__)
app.config.from_object(Config)
app.config.setdefault('SESSION_COOKIE_HTTPONLY', True)
app.config.setdefault('SESSION_COOKIE_SAMESITE', 'Lax')
app.config.setdefault('SESSION_COOKIE_SECURE', not app.config.get('DEBUG', False))
app.permanent_session_lifetime = timedelta(hours=app.config.get('ADMIN_SESSION_HOURS', 24))


@app.context_processor
def inject_site_globals():
    return {
        'current_year': datetime.now(timezone.utc).year,
        'site_name': app.config.get('SITE_NAME'),
    }


# Initialize CSRF protection
csrf = CSRFProtect(app)

# Initialize basic rate limiting
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=app.config.get('RATELIMIT_STORAGE_URI', 'memory://'),
    strategy='fixed-window',
    default_limits=["1000 per day", "200 per hour"],
)
limiter.init_app(app)


@limiter.request_filter
def _rate_limit_exempt_for_tests():
    return app.config.get('TESTING', False)


os.makedirs(app.config.get('LOG_DIR', 'logs'), exist_ok=True)
_file_handler = RotatingFileHandler(
    os.path.join(app.config.get('LOG_DIR', 'logs'), 'app.log'),
    maxBytes=5 * 1024 * 1024,
    backupCount=5,
)
_file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s'))
app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
if not any(isinstance(h, RotatingFileHandler) for h in app.logger.handlers):
    app.logger.addHandler(_file_handler)

# Service modules log through their own loggers; route them to the same file
_services_logger = logging.getLogger('services')
_services_logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
if _file_handler not in _services_logger.handlers:
    _services_logger.addHandler(_file_handler)

if app.config.get('SENTRY_DSN'):
    sentry_sdk.init(
        dsn=app.config.get('SENTRY_DSN'),
        integrations=[FlaskIntegration()],
        traces_sample_rate=app.config.get('SENTRY_TRACES_SAMPLE_RATE', 0.1),
    )

session_context = SessionContext.from_config(app.config)

CORS_PREFIXES = ('/functions/', '/api/')
CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type',
    'Access-Control-Allow-Methods': 'POST, OPTIONS',
}

REQUEST_METRICS = {
    'requests_total': 0,
    'errors_total': 0,
    'latency_ms_total': 0.0,
}


@app.before_request
def _metrics_before_request():
    request._start_ts = perf_counter()


@app.after_request
def _metrics_after_request(response):
    started = getattr(request, '_start_ts', None)
    if started is not None:
        REQUEST_METRICS['requests_total'] += 1
        elapsed = (perf_counter() - started) * 1000.0
        REQUEST_METRICS['latency_ms_total'] += elapsed
        if response.status_code >= 400:
            REQUEST_METRICS['errors_total'] += 1
    return response


@app.after_request
def _cors_headers(response):
    if request.path.startswith(CORS_PREFIXES):
        response.headers.update(CORS_HEADERS)
    return response


def is_api_request():
    return request.path.startswith(CORS_PREFIXES)


# ===== RECORD STORE =====

def get_store():
    """Record store for the current request, built from config on first use."""
    if 'store' not in g:
        g.store = build_store(app.config)
    return g.store


def init_db():
    """Create the sqlite tables and indexes; the hosted backend manages its own schema."""
    store = build_store(app.config)
    if isinstance(store, SqliteRecordStore):
        store.init_schema()
    else:
        app.logger.info('Using hosted record store at %s; skipping local schema setup', app.config.get('BACKEND_URL'))
    return store


# ===== ADMIN IDENTITY FOR FLASK-LOGIN =====

class AdminUser(UserMixin):
    """The single configured administrator."""

    def __init__(self, username):
        self.id = 'admin'
        self.username = username


login_manager = LoginManager()


@login_manager.user_loader
def load_user(user_id):
    # The signed session carries its own expiry; an expired admin is anonymous
    if user_id == 'admin' and session_context.admin_active():
        return AdminUser(app.config['ADMIN_USERNAME'])
    return None


login_manager.init_app(app)
login_manager.login_view = 'admin_login'
login_manager.login_message = 'Please sign in to access the admin dashboard.'
login_manager.login_message_category = 'warning'


def check_admin_credentials(username, password):
    expected_username = app.config.get('ADMIN_USERNAME') or ''
    if not hmac.compare_digest(username.encode('utf-8'), expected_username.encode('utf-8')):
        return False
    password_hash = app.config.get('ADMIN_PASSWORD_HASH')
    if password_hash:
        return check_password_hash(password_hash, password)
    expected_password = app.config.get('ADMIN_PASSWORD')
    if not expected_password:
        app.logger.error('Admin login attempted but neither ADMIN_PASSWORD nor ADMIN_PASSWORD_HASH is set')
        return False
    return hmac.compare_digest(password.encode('utf-8'), expected_password.encode('utf-8'))


# ===== JSON FUNCTION HELPERS =====

def json_boundary(failure_message):
    """Turn every failure inside a JSON function into a structured response.

    Validation and configuration errors keep their own status and payload.
    Upstream failures are reported with a generic detail string; anything
    unexpected is logged and answered with ``failure_message``.
    """
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            try:
                return view(*args, **kwargs)
            except UpstreamError as exc:
                app.logger.error(
                    '%s %s failed upstream: %s (status=%s)',
                    request.method, request.path, exc, exc.upstream_status,
                )
                return jsonify({'error': failure_message, 'details': exc.public_message}), exc.status_code
            except AppError as exc:
                if exc.status_code >= 500:
                    app.logger.error('%s %s: %s', request.method, request.path, exc.to_payload())
                return jsonify(exc.to_payload()), exc.status_code
            except HTTPException:
                raise
            except Exception:  # noqa: BLE001
                app.logger.exception('Unexpected error in %s', request.path)
                return jsonify({'error': failure_message}), 500
        return wrapper
    return decorator


def request_json():
    return request.get_json(silent=True) or {}


# ===== PUBLIC ROUTES =====

@app.route('/')
def index():
    """Landing page with the Ava chat widget."""
    return render_template(
        'index.html',
        source=request.args.get('source', ''),
        greeting=GREETING,
        starter_questions=list(STARTER_QUESTIONS),
        session_id=session_context.widget_session_id(),
    )


@app.route('/masterclass', methods=['GET', 'POST'])
@limiter.limit('20 per hour', methods=['POST'])
def masterclass():
    """Gated workshop replay. Shows the access form until a grant is in the session."""
    source = request.args.get('source')

    if request.method == 'POST':
        data, errors = masterclass_service.validate_access_form(request.form)
        if errors:
            flash('Please correct the highlighted fields and submit again.', 'danger')
            return render_gate(data, errors, source), 400

        try:
            masterclass_service.register_for_access(app.config, data, source)
        except AppError as exc:
            app.logger.error('Masterclass registration failed: %s', exc)
            flash('Registration error. Please try again or contact support.', 'danger')
            return render_gate(data, {}, source)

        grant = session_context.grant_access(data['email'], data['full_name'], data['firm_name'])
        best_effort('access webhook', masterclass_service.send_access_webhook, app.config, grant, 'form')
        flash(
            f"Welcome to {app.config['SITE_NAME']}! You now have "
            f"{session_context.access_hours}-hour access to the workshop replay.",
            'success',
        )
        return redirect(url_for('masterclass', source=source))

    link_grant = None
    if request.args.get('email'):
        link_grant = (request.args['email'], '', '')
    elif request.args.get('access') == 'true':
        link_grant = masterclass_service.DIRECT_ACCESS
    elif source in masterclass_service.SOCIAL_SOURCES:
        link_grant = masterclass_service.SOCIAL_ACCESS
    if link_grant:
        grant = session_context.grant_access(*link_grant)
        best_effort('access webhook', masterclass_service.send_access_webhook, app.config, grant, 'url_parameter')

    grant = session_context.access()
    if not grant:
        return render_gate({}, {}, source)

    return render_template(
        'masterclass.html',
        access=grant,
        video_url=app.config['MASTERCLASS_VIDEO_URL'],
        practice_areas=masterclass_service.PRACTICE_AREAS,
        source=source or '',
        starter_questions=list(STARTER_QUESTIONS),
        greeting=GREETING,
        session_id=session_context.widget_session_id(),
    )


def render_gate(form, errors, source):
    return render_template(
        'masterclass_gate.html',
        form=form,
        errors=errors,
        source=source or '',
        practice_areas=masterclass_service.PRACTICE_AREAS,
    )


@app.route('/masterclass/pilot', methods=['POST'])
@limiter.limit('10 per hour')
def masterclass_pilot():
    """Pilot program application; forwards to the pilot webhook then to checkout."""
    if not session_context.access():
        flash('Your replay access has expired. Please register again.', 'warning')
        return redirect(url_for('masterclass'))

    application = masterclass_service.pilot_application_from_form(request.form)
    if not masterclass_service.EMAIL_REGEX.match(application['email']):
        flash('Please enter a valid email address.', 'danger')
        return redirect(url_for('masterclass'))

    try:
        masterclass_service.submit_pilot_application(app.config, application)
    except AppError as exc:
        app.logger.error('Pilot application failed: %s', exc)
        flash('Submission error. Please try again or contact support.', 'danger')
        return redirect(url_for('masterclass'))

    return redirect(masterclass_service.payment_redirect_url(app.config, application['email']))


# ===== JSON FUNCTIONS =====

@app.route('/functions/chat', methods=['POST'])
@csrf.exempt
@limiter.limit('30 per minute')
@json_boundary('Failed to get AI response')
def functions_chat():
    data = request_json()
    message = data.get('message')
    session_id = data.get('sessionId')
    require_chat_fields(message, session_id)

    store = get_store()
    gateway = CompletionGateway.from_config(app.config)
    result = answer_chat(
        store,
        gateway,
        message,
        session_id,
        data.get('userEmail'),
        knowledge_limit=app.config.get('KNOWLEDGE_CONTEXT_LIMIT', 5),
    )
    app.logger.info('Chat answered for session %s in %sms', session_id, result['responseTime'])
    return jsonify(result)


@app.route('/functions/increment-question', methods=['POST'])
@csrf.exempt
@limiter.limit('60 per minute')
@json_boundary('Internal server error')
def functions_increment_question():
    question = request_json().get('question')
    if not question:
        raise ValidationError('Question is required')
    outcome = track_question(get_store(), question)
    app.logger.info('Popular question %s', outcome)
    return jsonify({'success': True})


@app.route('/functions/knowledge-upload', methods=['POST'])
@csrf.exempt
@limiter.limit('20 per minute')
@json_boundary('Internal server error')
def functions_knowledge_upload():
    document = knowledge_service.save_document(get_store(), request_json())
    return jsonify({'success': True, 'document': document})


@app.route('/functions/submit-form-data', methods=['POST'])
@csrf.exempt
@limiter.limit('30 per minute')
@json_boundary('Failed to submit form data')
def functions_submit_form_data():
    body = forward_form_data(app.config, request_json())
    return app.response_class(body, status=200, mimetype='application/json')


@app.route('/api/chat', methods=['POST'])
@csrf.exempt
@limiter.limit('30 per minute')
@json_boundary('Failed to process chat message')
def widget_chat():
    """Chat widget turn: runs the intake flow around one user message or starter question."""
    data = request_json()
    starter = data.get('starter_question')
    message = data.get('message')
    if not starter and not (message and message.strip()):
        raise ValidationError('Message is required')

    session_id = session_context.widget_session_id(data.get('sessionId'))
    marker = app.config.get('INTAKE_SOURCE_MARKER', 'fb')
    source = marker if data.get('source') == marker else 'web'

    store = get_store()
    sessions = IntakeSessionRepository(store, app.config.get('INTAKE_SESSION_TTL_HOURS', 12))
    state = sessions.load_or_create(session_id, source, data.get('userEmail'))
    if data.get('source'):
        state.source = source

    flow = build_intake_flow(state, store, sessions)
    result = flow.handle_starter_question(starter) if starter else flow.handle_message(message)
    sessions.save(state)

    payload = result.to_dict()
    payload['sessionId'] = session_id
    return jsonify(payload)


def build_intake_flow(state, store, sessions):
    notifier = LeadNotifier(app.config, store)

    def respond(text, user_email):
        # Built per call: collection answers and starter questions never need the key
        gateway = CompletionGateway.from_config(app.config)
        return answer_chat(
            store,
            gateway,
            text,
            state.session_id,
            user_email,
            knowledge_limit=app.config.get('KNOWLEDGE_CONTEXT_LIMIT', 5),
        )['response']

    return IntakeFlow(
        state,
        responder=respond,
        tracker=lambda text: track_question(store, text),
        notifier=notifier.notify,
        flusher=notifier.flush,
        claimer=lambda: sessions.claim_flush(state),
        settings=FlowSettings(
            source_marker=app.config.get('INTAKE_SOURCE_MARKER', 'fb'),
            min_turns=app.config.get('INTAKE_MIN_TURNS', 3),
            notify_turn=app.config.get('INTAKE_NOTIFY_TURN', 5),
        ),
    )


# ===== ADMIN AUTH ROUTES =====

@app.route('/admin/login', methods=['GET', 'POST'])
@limiter.limit('5 per 15 minutes', methods=['POST'])
def admin_login():
    if session_context.admin_active():
        return redirect(url_for('admin_dashboard'))

    if request.method == 'POST':
        username = (request.form.get('username') or '').strip()
        password = request.form.get('password') or ''
        if username and password and check_admin_credentials(username, password):
            session_context.start_admin()
            login_user(AdminUser(username))
            app.logger.info('Admin signed in')
            return redirect(url_for('admin_dashboard'))

        app.logger.warning('Failed admin login from %s', get_remote_address())
        flash('Invalid username or password', 'danger')
        return render_template('admin/login.html', username=username)

    return render_template('admin/login.html', username='')


@app.route('/admin/logout', methods=['POST'])
@login_required
def admin_logout():
    logout_user()
    session_context.end_admin()
    flash('You have been signed out.', 'info')
    return redirect(url_for('admin_login'))


# ===== ADMIN ROUTES =====

@app.route('/admin')
@login_required
def admin_dashboard():
    """Analytics overview."""
    try:
        summary = analytics_service.dashboard_summary(get_store())
    except AppError as exc:
        app.logger.error('Error fetching analytics: %s', exc)
        flash('Failed to load analytics. Please try again or contact support.', 'danger')
        summary = {
            'total_users': 0,
            'avg_response_time': 0,
            'total_sessions': 0,
            'today_chats': 0,
            'popular_questions': [],
        }
    return render_template('admin/dashboard.html', summary=summary, active_tab='analytics')


@app.route('/admin/instructions', methods=['GET', 'POST'])
@login_required
def admin_instructions():
    store = get_store()
    if request.method == 'POST':
        try:
            knowledge_service.create_instruction(
                store,
                request.form.get('instruction_text'),
                request.form.get('priority') or 1,
            )
            flash('Instruction added successfully', 'success')
        except AppError as exc:
            flash(f'Failed to add instruction: {exc.message}', 'danger')
        return redirect(url_for('admin_instructions'))

    return render_template(
        'admin/instructions.html',
        instructions=knowledge_service.list_instructions(store),
        active_tab='instructions',
    )


@app.route('/admin/instructions/<instruction_id>/edit', methods=['POST'])
@login_required
def admin_edit_instruction(instruction_id):
    try:
        knowledge_service.update_instruction(
            get_store(),
            instruction_id,
            request.form.get('instruction_text'),
            request.form.get('priority') or 1,
        )
        flash('Instruction updated successfully', 'success')
    except AppError as exc:
        flash(f'Failed to update instruction: {exc.message}', 'danger')
    return redirect(url_for('admin_instructions'))


@app.route('/admin/instructions/<instruction_id>/toggle', methods=['POST'])
@login_required
def admin_toggle_instruction(instruction_id):
    try:
        active = knowledge_service.toggle_instruction(get_store(), instruction_id)
        flash(f"Instruction {'activated' if active else 'deactivated'}", 'success')
    except AppError as exc:
        flash(f'Failed to update instruction: {exc.message}', 'danger')
    return redirect(url_for('admin_instructions'))


@app.route('/admin/knowledge', methods=['GET', 'POST'])
@login_required
def admin_knowledge():
    store = get_store()
    if request.method == 'POST':
        upload = request.files.get('file')
        if upload is None or not upload.filename:
            flash('Choose a file to upload.', 'danger')
            return redirect(url_for('admin_knowledge'))
        try:
            payload = knowledge_service.document_from_upload(upload)
            knowledge_service.save_document(store, payload)
            flash(f"{payload['filename']} uploaded successfully", 'success')
        except AppError as exc:
            flash(f'Upload failed: {exc.details or exc.message}', 'danger')
        return redirect(url_for('admin_knowledge'))

    return render_template(
        'admin/knowledge.html',
        documents=knowledge_service.list_documents(store),
        allowed_extensions=sorted(knowledge_service.ALLOWED_EXTENSIONS),
        active_tab='knowledge',
    )


@app.route('/admin/knowledge/<document_id>/delete', methods=['POST'])
@login_required
def admin_delete_document(document_id):
    try:
        knowledge_service.delete_document(get_store(), document_id)
        flash('File deleted successfully', 'success')
    except AppError as exc:
        flash(f'Failed to delete file: {exc.message}', 'danger')
    return redirect(url_for('admin_knowledge'))


@app.route('/admin/chat-logs')
@login_required
def admin_chat_logs():
    term = (request.args.get('q') or '').strip()
    logs = analytics_service.search_chat_logs(get_store(), term)
    return render_template(
        'admin/chat_logs.html',
        grouped_logs=analytics_service.group_by_email(logs),
        total=len(logs),
        term=term,
        active_tab='logs',
    )


@app.route('/admin/chat-logs/export')
@login_required
@limiter.limit('10 per hour')
def admin_export_chat_logs():
    term = (request.args.get('q') or '').strip()
    logs = analytics_service.search_chat_logs(get_store(), term)
    out = BytesIO(analytics_service.export_csv(logs).encode('utf-8'))
    out.seek(0)
    return send_file(
        out,
        as_attachment=True,
        download_name=f"chat-logs-{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.csv",
        mimetype='text/csv',
    )


@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'service': 'ai-masterclass-site'}), 200


@app.route('/metrics')
def metrics():
    total = REQUEST_METRICS['requests_total']
    avg_latency = (REQUEST_METRICS['latency_ms_total'] / total) if total else 0.0
    return jsonify({
        'requests_total': total,
        'errors_total': REQUEST_METRICS['errors_total'],
        'avg_latency_ms': round(avg_latency, 2),
    }), 200


# ===== ERROR HANDLERS =====


@app.errorhandler(429)
def rate_limited(error):
    reset_ts = int((datetime.now(timezone.utc) + timedelta(minutes=15)).timestamp())
    if is_api_request():
        resp = jsonify({'error': 'Too many requests', 'details': 'Rate limit exceeded. Please wait and try again.'})
        resp.status_code = 429
    else:
        response = render_template('errors/rate_limit.html', reset_timestamp=reset_ts, wait_minutes=15)
        resp = app.make_response((response, 429))
    resp.headers['X-RateLimit-Reset'] = str(reset_ts)
    return resp


@app.errorhandler(404)
def not_found(error):
    if is_api_request():
        return jsonify({'error': 'Not found'}), 404
    return render_template('errors/error.html', title='Page not found',
                           message='The page you were looking for does not exist.'), 404


@app.errorhandler(500)
def internal_error(error):
    if is_api_request():
        return jsonify({'error': 'Internal server error'}), 500
    return render_template('errors/error.html', title='Something went wrong',
                           message='An unexpected server error occurred. Please retry in a moment. '
                                   'If it persists, contact support.'), 500


@app.errorhandler(RequestEntityTooLarge)
def file_too_large(error):
    limit_mb = app.config.get('MAX_CONTENT_LENGTH', 0) // (1024 * 1024)
    if is_api_request():
        return jsonify({'error': 'Payload too large', 'details': f'Maximum request size is {limit_mb} MB'}), 413
    flash(f'Upload failed: file exceeds the {limit_mb} MB limit.', 'danger')
    return redirect(request.referrer or url_for('admin_knowledge')), 413

# ===== APPLICATION ENTRY POINT =====

if __name__ == '__main__':
    init_db()
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=app.config['DEBUG'])
