import os
import secrets
import tempfile

import structlog
from flask import Flask, jsonify, request, session, send_file
from werkzeug.utils import secure_filename

from exporter import Exporter
from models import ReconConfig, ReconError, Side
from recon_engine import ReconEngine
import pipeline

log = structlog.get_logger(__name__)

app = Flask(__name__)
app.secret_key = secrets.token_hex(16)

# Configure upload folder
UPLOAD_FOLDER = os.path.join(tempfile.gettempdir(), 'recon_uploads')
os.makedirs(UPLOAD_FOLDER, exist_ok=True)

app.config['UPLOAD_FOLDER'] = UPLOAD_FOLDER
app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16MB max limit

PREVIEW_ROWS = 5


def get_session_dir():
    """Get or create a unique directory for the current session."""
    if 'session_id' not in session:
        session['session_id'] = secrets.token_hex(8)

    session_dir = os.path.join(app.config['UPLOAD_FOLDER'], session['session_id'])
    os.makedirs(session_dir, exist_ok=True)
    return session_dir


def _read_text(path):
    with open(path, encoding='utf-8-sig') as f:
        return f.read()


def _table_preview(table):
    data = table.to_dict()
    data['rows'] = data['rows'][:PREVIEW_ROWS]
    return data


def _load_recon_session():
    """Rebuild the reconciliation session from the files and choices saved so far."""
    if 'path_source' not in session or 'path_target' not in session:
        raise ValueError('Upload a source and a target file first')

    config = ReconConfig(
        similarity_threshold=session.get('threshold', ReconConfig.similarity_threshold),
        max_suggestions=session.get('max_suggestions', ReconConfig.max_suggestions),
    )
    recon = pipeline.start_session(
        _read_text(session['path_source']),
        _read_text(session['path_target']),
        os.path.basename(session['path_source']),
        os.path.basename(session['path_target']),
        config,
    )

    header_rows = session.get('header_rows', {})
    if 'source' in header_rows:
        pipeline.set_header_row(recon, Side.SOURCE, header_rows['source'])
    if 'target' in header_rows:
        pipeline.set_header_row(recon, Side.TARGET, header_rows['target'])

    for source_header, target_header in session.get('header_overrides', {}).items():
        pipeline.select_header_match(recon, source_header, target_header)

    key = session.get('key')
    if key:
        pipeline.suggest_keys(recon)
        pipeline.confirm_key(recon, key['sourceKey'], key['targetKey'])

    formula = session.get('formula')
    if formula and recon.key_mapping:
        pipeline.confirm_formula(
            recon, formula['formula'], formula['sourceColumns'], formula['targetColumns']
        )
    return recon


@app.errorhandler(ValueError)
@app.errorhandler(ReconError)
def handle_bad_request(error):
    log.warning("request_failed", path=request.path, error=str(error))
    return jsonify({'error': str(error)}), 400


@app.route('/api/upload', methods=['POST'])
def upload():
    if 'source' not in request.files or 'target' not in request.files:
        raise ValueError('Both a source and a target file are required')

    file_source = request.files['source']
    file_target = request.files['target']
    if file_source.filename == '' or file_target.filename == '':
        raise ValueError('No selected file')

    session_dir = get_session_dir()
    path_source = os.path.join(session_dir, 'source_' + secure_filename(file_source.filename))
    path_target = os.path.join(session_dir, 'target_' + secure_filename(file_target.filename))
    file_source.save(path_source)
    file_target.save(path_target)

    # A new pair of files starts a new run
    for name in ('header_rows', 'header_overrides', 'key', 'formula'):
        session.pop(name, None)
    session['path_source'] = path_source
    session['path_target'] = path_target

    recon = _load_recon_session()
    if not recon.source.headers or not recon.target.headers:
        raise ValueError('One or both files do not contain valid CSV headers')

    return jsonify({
        'source': _table_preview(recon.source),
        'target': _table_preview(recon.target),
    })


@app.route('/api/header-row', methods=['POST'])
def header_row():
    data = request.get_json(force=True)
    side = Side(data.get('side'))
    index = int(data.get('index', -1))

    recon = _load_recon_session()
    table = pipeline.set_header_row(recon, side, index)

    header_rows = session.get('header_rows', {})
    header_rows[side.value] = index
    session['header_rows'] = header_rows
    for name in ('header_overrides', 'key', 'formula'):
        session.pop(name, None)

    return jsonify(_table_preview(table))


@app.route('/api/headers/mapping', methods=['GET'])
def header_mapping():
    if 'threshold' in request.args:
        session['threshold'] = int(request.args['threshold'])
    if 'max' in request.args:
        session['max_suggestions'] = max(1, min(10, int(request.args['max'])))

    recon = _load_recon_session()
    return jsonify({
        'threshold': recon.config.similarity_threshold,
        'maxSuggestions': recon.config.max_suggestions,
        'mapping': [entry.to_dict() for entry in recon.header_mapping],
    })


@app.route('/api/headers/select', methods=['POST'])
def header_select():
    data = request.get_json(force=True)
    recon = _load_recon_session()
    entry = pipeline.select_header_match(recon, data.get('sourceHeader'), data.get('targetHeader'))

    overrides = session.get('header_overrides', {})
    overrides[entry.source_header] = entry.selected_match
    session['header_overrides'] = overrides
    return jsonify(entry.to_dict())


@app.route('/api/keys', methods=['GET'])
def key_candidates():
    recon = _load_recon_session()
    candidates = pipeline.suggest_keys(recon)
    return jsonify({
        'candidates': [c.to_dict() for c in candidates],
        'manualSelectionRequired': not candidates,
    })


@app.route('/api/keys/confirm', methods=['POST'])
def key_confirm():
    data = request.get_json(force=True)
    recon = _load_recon_session()
    pipeline.suggest_keys(recon)
    key_mapping = pipeline.confirm_key(recon, data.get('sourceKey'), data.get('targetKey'))

    session['key'] = {'sourceKey': key_mapping.source_key, 'targetKey': key_mapping.target_key}
    session.pop('formula', None)
    return jsonify(key_mapping.to_dict())


@app.route('/api/formula/suggest', methods=['POST'])
def formula_suggest():
    data = request.get_json(force=True)
    recon = _load_recon_session()
    suggestion = pipeline.suggest_formula(
        recon, data.get('sourceColumns', []), data.get('targetColumns', [])
    )
    return jsonify(suggestion.to_dict())


@app.route('/api/formula/confirm', methods=['POST'])
def formula_confirm():
    data = request.get_json(force=True)
    recon = _load_recon_session()
    recon_formula = pipeline.confirm_formula(
        recon,
        data.get('formula', ''),
        data.get('sourceColumns'),
        data.get('targetColumns'),
    )

    session['formula'] = recon_formula.to_dict()
    return jsonify({
        'formula': recon_formula.to_dict(),
        'preview': pipeline.preview(recon),
    })


@app.route('/api/reconcile', methods=['POST'])
def reconcile_run():
    recon = _load_recon_session()

    engine = ReconEngine(recon.config)
    try:
        result = pipeline.run(recon, engine)
        exported = Exporter(engine).export_all(
            result, get_session_dir(), recon.source.headers, recon.target.headers
        )
        tables = {
            name: engine.preview_table(name, PREVIEW_ROWS)
            for name in Exporter.TABLE_FILE_NAMES
        }
    finally:
        engine.close()

    payload = result.to_dict()
    payload['downloads'] = {name: os.path.basename(path) for name, path in exported.items()}
    payload['tables'] = tables
    return jsonify(payload)


@app.route('/api/mapping/export', methods=['GET'])
def mapping_export():
    recon = _load_recon_session()
    payload = pipeline.mapping_export(recon)
    Exporter.export_json(payload, os.path.join(get_session_dir(), Exporter.MAPPING_FILE_NAME))
    return jsonify(payload)


@app.route('/download/<path:filename>')
def download_file(filename):
    """Download a file from the session directory."""
    directory = get_session_dir()
    return send_file(os.path.join(directory, secure_filename(filename)), as_attachment=True)


if __name__ == '__main__':
    app.run(debug=True)
