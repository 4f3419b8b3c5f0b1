"""
Royalty Ledger - JSON API
Flask app serving client earnings, chart series, report ingestion and withdrawals.
"""

import io
import json
import logging
import os
from datetime import date, datetime
from decimal import Decimal

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
_log_dir = os.path.dirname(os.path.abspath(__file__))
_log_handlers = [logging.StreamHandler()]
# Only add file handler when filesystem is writable (local dev, not Cloud Run)
if not os.getenv('DB_HOST'):
    try:
        _log_handlers.append(logging.FileHandler(os.path.join(_log_dir, 'app.log'), encoding='utf-8'))
    except OSError:
        pass
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    handlers=_log_handlers,
)
log = logging.getLogger('royalty')

from dotenv import load_dotenv
load_dotenv()

from flask import Flask, jsonify, request, send_file

import db
import ledger
import reconciliation
import storage
from calculations import format_report_row, to_float
from errors import (
    InsufficientBalance, NotFound, PartialIngestionFailure, StoreUnavailable, ValidationError,
    WithdrawalStateError,
)
from memory_store import MemoryStore
from validator import validate_report_input

app = Flask(__name__)
app.secret_key = os.getenv('FLASK_SECRET_KEY', os.urandom(24).hex())
app.config['MAX_CONTENT_LENGTH'] = int(os.getenv('MAX_UPLOAD_MB', '50')) * 1024 * 1024

# Initialise PostgreSQL + GCS (graceful: without PostgreSQL the app runs on an in-memory store)
_db_ok = db.init_pool()
if _db_ok:
    _migrations_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')
    if os.path.isdir(_migrations_dir):
        db.run_migrations(_migrations_dir)
    app.config['STORE'] = db
else:
    log.warning("Using in-memory store; data will not survive a restart")
    app.config['STORE'] = MemoryStore()
_gcs_ok = storage.init_gcs()
app.config['ARCHIVE'] = storage


def _store():
    return app.config['STORE']


def _archive():
    return app.config['ARCHIVE']


def _jsonable(obj):
    """Decimals -> numbers, dates -> ISO strings, recursively."""
    if isinstance(obj, dict):
        return {k: _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(v) for v in obj]
    if isinstance(obj, Decimal):
        return to_float(obj)
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    return obj


def _read_or_default(fn, default, what):
    """Run a store read; on StoreUnavailable log and return the default."""
    try:
        return fn()
    except StoreUnavailable as e:
        log.warning("%s degraded to default: %s", what, e)
        return default


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError('Invalid JSON body')
    return body


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(NotFound)
def _not_found(e):
    return jsonify(success=False, message=str(e)), 404


@app.errorhandler(WithdrawalStateError)
def _bad_transition(e):
    return jsonify(success=False, message=str(e)), 409


@app.errorhandler(ValidationError)
def _invalid(e):
    return jsonify(success=False, message=str(e),
                   issues=[i.to_dict() for i in e.issues]), 400


@app.errorhandler(InsufficientBalance)
def _insufficient(e):
    return jsonify(success=False, message='Insufficient balance',
                   balance=to_float(e.balance)), 400


@app.errorhandler(PartialIngestionFailure)
def _partial_ingestion(e):
    return jsonify(success=False, message=str(e), report_id=e.report_id), 500


@app.errorhandler(StoreUnavailable)
def _store_down(e):
    log.error("Store unavailable: %s %s: %s", request.method, request.path, e)
    return jsonify(success=False, message='Database unavailable'), 503


@app.errorhandler(413)
def _request_too_large(e):
    log.error("413 Request Entity Too Large: %s %s (content-length: %s)",
              request.method, request.path, request.content_length)
    return jsonify(error='File too large', message='Upload exceeds the maximum allowed size.'), 413


@app.errorhandler(500)
def _internal_error(e):
    log.error("500 Internal Server Error: %s %s: %s", request.method, request.path, e)
    return jsonify(error='Internal server error', message=str(e)), 500


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.route('/api/health')
def api_health():
    store = _store()
    return jsonify({
        'status': 'ok',
        'database': 'connected' if store is db and db.is_available() else 'memory',
        'archive': 'connected' if _archive().is_available() else 'disabled',
    })


# ---------------------------------------------------------------------------
# Client views
# ---------------------------------------------------------------------------

@app.route('/api/clients/<int:client_id>')
def api_client_profile(client_id):
    return jsonify(reconciliation.get_client_profile(_store(), client_id))


@app.route('/api/clients/<int:client_id>/stats')
def api_client_stats(client_id):
    snapshot = reconciliation.get_snapshot(_store(), client_id)
    return jsonify(snapshot.to_dict())


@app.route('/api/clients/<int:client_id>/chart-data')
def api_client_chart(client_id):
    view = request.args.get('view', 'monthly')
    basis = request.args.get('basis', 'gross')
    points = reconciliation.get_chart_series(_store(), client_id, view)
    if basis == 'net':
        share = reconciliation.get_share_percent(_store(), client_id)
        points = reconciliation.scale_series(points, share)
    elif basis != 'gross':
        raise ValidationError(f"Unknown basis: {basis!r}")
    return jsonify([p.to_dict() for p in points])


@app.route('/api/clients/<int:client_id>/reports')
def api_client_reports(client_id):
    store = _store()
    reports = _read_or_default(lambda: store.list_reports(client_id), [], 'Client reports')
    share = reconciliation.get_share_percent(store, client_id)
    rows = []
    for report in reports:
        report.pop('pending_rows', None)
        rows.append(format_report_row(report, share))
    return jsonify(_jsonable(rows))


@app.route('/api/clients/<int:client_id>/royalties')
def api_client_royalties(client_id):
    store = _store()
    rows = _read_or_default(lambda: store.list_royalties(client_id), [], 'Client royalties')
    return jsonify(_jsonable(rows))


@app.route('/api/clients/<int:client_id>/withdrawals', methods=['GET'])
def api_client_withdrawals(client_id):
    store = _store()
    rows = _read_or_default(lambda: store.list_withdrawals(client_id), [], 'Client withdrawals')
    return jsonify(_jsonable(rows))


@app.route('/api/clients/<int:client_id>/withdrawals', methods=['POST'])
def api_client_request_withdrawal(client_id):
    body = _json_body()
    withdrawal_id = ledger.request_withdrawal(_store(), client_id, body.get('amount'))
    return jsonify(success=True, id=withdrawal_id), 201


@app.route('/api/clients/<int:client_id>/settings', methods=['POST'])
def api_client_settings(client_id):
    body = _json_body()
    ledger.update_client_currency(_store(), client_id, body.get('currency'))
    return jsonify(success=True)


@app.route('/api/clients/<int:client_id>/notifications')
def api_client_notifications(client_id):
    store = _store()
    rows = _read_or_default(lambda: store.list_notifications(client_id, limit=10), [],
                            'Client notifications')
    return jsonify(_jsonable(rows))


@app.route('/api/clients/<int:client_id>/notifications/read', methods=['POST'])
def api_client_notifications_read(client_id):
    count = _store().mark_notifications_read(client_id)
    return jsonify(success=True, count=count)


@app.route('/api/reports/<int:report_id>/download')
def api_report_download(report_id):
    report = _store().get_report(report_id)
    if report is None:
        raise NotFound(f"Report {report_id} not found")
    archive = _archive()
    if not report.get('file_url') or not archive.blob_exists(report['file_url']):
        return jsonify(success=False, message='File not found'), 404
    data = archive.download_to_bytes(report['file_url'])
    return send_file(io.BytesIO(data), as_attachment=True,
                     download_name=report.get('filename') or os.path.basename(report['file_url']))


# ---------------------------------------------------------------------------
# Admin views
# ---------------------------------------------------------------------------

@app.route('/api/admin/stats')
def api_admin_stats():
    return jsonify(reconciliation.get_admin_overview(_store()).to_dict())


@app.route('/api/admin/clients')
def api_admin_clients():
    store = _store()
    rows = _read_or_default(lambda: store.list_clients(role=reconciliation.CLIENT_ROLE), [],
                            'Client list')
    return jsonify([{'id': r['id'], 'name': r.get('name'), 'email': r.get('email')} for r in rows])


@app.route('/api/admin/labels')
def api_admin_labels():
    return jsonify(_jsonable(_store().list_labels()))


@app.route('/api/admin/reports', methods=['GET'])
def api_admin_reports():
    store = _store()
    return jsonify(_jsonable(_read_or_default(store.list_reports, [], 'Report list')))


@app.route('/api/admin/reports/upload', methods=['POST'])
def api_admin_report_upload():
    """Multipart upload: file + metadata JSON + royalty_data JSON (already-parsed rows)."""
    upload = request.files.get('file')
    metadata_str = request.form.get('metadata')
    if upload is None or not metadata_str:
        raise ValidationError('Missing file or metadata')
    try:
        metadata = json.loads(metadata_str)
        rows = json.loads(request.form.get('royalty_data') or '[]')
    except json.JSONDecodeError as e:
        raise ValidationError(f'Invalid JSON in upload: {e}')
    if not isinstance(metadata, dict) or not isinstance(rows, list):
        raise ValidationError('metadata must be an object and royalty_data a list')

    archive = _archive()
    if not archive.is_available():
        return jsonify(success=False, message='GCS not configured'), 503

    filename = upload.filename or 'report.xlsx'
    gcs_path = archive.report_path(metadata.get('client_id'), filename)
    report = validate_report_input({**metadata, 'file_url': gcs_path, 'filename': filename}, rows)

    archive.upload_report_file(gcs_path, filename, upload.stream)
    try:
        report_id = ledger.record_report(_store(), report)
    except (StoreUnavailable, NotFound, ValidationError):
        # No report row references the file
        if not archive.delete_blob(gcs_path):
            log.warning("Orphaned upload %s not deleted", gcs_path)
        raise
    return jsonify(success=True, id=report_id,
                   rows=report.validation.kept_rows,
                   warnings=[i.to_dict() for i in report.validation.issues]), 201


@app.route('/api/admin/reports/<int:report_id>', methods=['PUT'])
def api_admin_report_update(report_id):
    ledger.update_report(_store(), report_id, _json_body())
    return jsonify(success=True)


@app.route('/api/admin/reports/<int:report_id>', methods=['DELETE'])
def api_admin_report_delete(report_id):
    ledger.delete_report(_store(), report_id, archive=_archive())
    return jsonify(success=True)


@app.route('/api/admin/reports/reconcile', methods=['POST'])
def api_admin_reports_reconcile():
    outcome = ledger.reconcile_unexpanded_reports(_store())
    return jsonify(success=True, reports={str(k): v for k, v in outcome.items()})


@app.route('/api/admin/royalties', methods=['POST'])
def api_admin_royalty_add():
    ledger.add_royalty(_store(), _json_body())
    return jsonify(success=True), 201


@app.route('/api/admin/royalties/bulk', methods=['POST'])
def api_admin_royalties_bulk():
    entries = _json_body().get('royalties')
    if not isinstance(entries, list):
        raise ValidationError('royalties must be a list')
    count = ledger.add_royalties_bulk(_store(), entries)
    return jsonify(success=True, count=count), 201


@app.route('/api/admin/royalties/<int:royalty_id>', methods=['DELETE'])
def api_admin_royalty_delete(royalty_id):
    ledger.delete_royalty(_store(), royalty_id)
    return jsonify(success=True)


@app.route('/api/admin/withdrawals', methods=['GET'])
def api_admin_withdrawals():
    store = _store()
    return jsonify(_jsonable(_read_or_default(store.list_withdrawals, [], 'Withdrawal list')))


@app.route('/api/admin/withdrawals/<int:withdrawal_id>', methods=['POST'])
def api_admin_withdrawal_status(withdrawal_id):
    ledger.set_withdrawal_status(_store(), withdrawal_id, _json_body().get('status'))
    return jsonify(success=True)


@app.route('/api/admin/withdrawals/<int:withdrawal_id>', methods=['DELETE'])
def api_admin_withdrawal_delete(withdrawal_id):
    ledger.delete_withdrawal(_store(), withdrawal_id)
    return jsonify(success=True)


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    log.info(f"Royalty Ledger starting on http://localhost:{port}")
    app.run(host='0.0.0.0', port=port, debug=False)
