#!/usr/bin/env python3
"""
Flask Web Application for the Coroutine Visualizer
Provides REST API endpoints for ingesting coroutine lifecycle events and
querying the reconstructed hierarchy, timelines and thread activity.
"""

from flask import Flask, request, jsonify
from werkzeug.utils import secure_filename
import os
import tempfile
from coroutine_viz import SessionRegistry
from coroutine_viz.processors import EventFileProcessor, TreeProjector
from coroutine_viz.web import prepare_results

app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = 500 * 1024 * 1024
app.config['UPLOAD_FOLDER'] = tempfile.gettempdir()

ALLOWED_EXTENSIONS = {'json', 'jsonl', 'ndjson'}

registry = SessionRegistry()


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def _session_or_404(session_id):
    session = registry.get(session_id)
    if session is None:
        return None, (jsonify({'error': f"Session '{session_id}' not found"}), 404)
    return session, None


def _int_arg(name):
    value = request.args.get(name)
    if value is None or value == '':
        return None
    return int(value)


@app.route('/api/sessions', methods=['GET'])
def list_sessions():
    """List active sessions with coroutine and event counts."""
    return jsonify(registry.list_sessions())


@app.route('/api/sessions', methods=['POST'])
def create_session():
    """
    Create a session.
    Accepts: optional 'sessionId' query parameter or JSON body field
    Returns: JSON with the new session id
    """
    body = request.get_json(silent=True) or {}
    session_id = request.args.get('sessionId') or body.get('sessionId')
    try:
        session = registry.create(session_id)
    except ValueError as e:
        return jsonify({'error': str(e)}), 409
    return jsonify({'sessionId': session.session_id, 'message': 'Session created'}), 201


@app.route('/api/sessions/<session_id>', methods=['GET'])
def get_session(session_id):
    """Session snapshot: counts plus the flat coroutine list."""
    session, error = _session_or_404(session_id)
    if error:
        return error
    return jsonify({
        'sessionId': session.session_id,
        'coroutineCount': session.coroutine_count,
        'eventCount': session.event_count,
        'coroutines': [node.to_dict() for node in session.snapshot().values()],
    })


@app.route('/api/sessions/<session_id>', methods=['DELETE'])
def delete_session(session_id):
    if not registry.delete(session_id):
        return jsonify({'error': f"Session '{session_id}' not found"}), 404
    return jsonify({'message': f"Session '{session_id}' deleted"})


@app.route('/api/sessions/<session_id>/events', methods=['POST'])
def ingest_events(session_id):
    """
    Apply a batch of events to a session (created on first use).
    Accepts: JSON array of event records, or an object with an 'events' array
    Returns: JSON with applied/dropped/duplicate counts
    """
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        payload = payload.get('events')
    if not isinstance(payload, list):
        return jsonify({'error': 'Expected a JSON array of events'}), 400

    session = registry.get_or_create(session_id)
    dropped_before = session.dropped_count
    duplicates_before = session.duplicate_count
    applied = session.apply_many(payload)

    return jsonify({
        'sessionId': session.session_id,
        'applied': applied,
        'dropped': session.dropped_count - dropped_before,
        'duplicates': session.duplicate_count - duplicates_before,
        'eventCount': session.event_count,
    })


@app.route('/api/sessions/<session_id>/upload', methods=['POST'])
def upload_events(session_id):
    """
    Load an event log file into a session.
    Accepts: multipart/form-data with a 'file' field (.json, .jsonl, .ndjson)
    Returns: JSON session summary
    """
    if 'file' not in request.files:
        return jsonify({'error': 'No file provided'}), 400

    file = request.files['file']

    if not file.filename:
        return jsonify({'error': 'No file selected'}), 400

    if not allowed_file(file.filename):
        return jsonify({'error': 'Invalid file type. Only JSON event logs are allowed.'}), 400

    filename = secure_filename(file.filename)
    filepath = os.path.join(app.config['UPLOAD_FOLDER'], filename)
    try:
        file.save(filepath)

        # Records naming another session are left out; unnamed ones belong here
        records = []
        other_sessions = set()
        for record in EventFileProcessor.iter_records(filepath):
            record_session = EventFileProcessor.session_of(record)
            if record_session is None or record_session == session_id:
                records.append(record)
            else:
                other_sessions.add(record_session)

        if not records:
            return jsonify({
                'error': f"No events for session '{session_id}' in uploaded file",
                'sessionsInFile': sorted(other_sessions),
            }), 400

        session = registry.get_or_create(session_id)
        session.apply_many(records)
        print(f"Loaded {len(records)} events from {filename} into session {session_id}")

        result = session.summary()
        result['skippedSessions'] = sorted(other_sessions)
        return jsonify(result)

    except Exception as e:
        return jsonify({'error': str(e)}), 500

    finally:
        if os.path.exists(filepath):
            os.remove(filepath)


@app.route('/api/sessions/<session_id>/events', methods=['GET'])
def get_events(session_id):
    """
    Retained events in seq order.
    Query: sinceStep, limit, kind (repeatable or comma separated), coroutineId
    """
    session, error = _session_or_404(session_id)
    if error:
        return error

    try:
        since_step = _int_arg('sinceStep')
        limit = _int_arg('limit')
    except ValueError:
        return jsonify({'error': 'sinceStep and limit must be integers'}), 400

    kinds = [k for value in request.args.getlist('kind') for k in value.split(',') if k]
    events = session.events(
        since_seq=since_step,
        limit=limit,
        kinds=kinds or None,
        coroutine_id=request.args.get('coroutineId'),
    )
    return jsonify([event.to_dict() for event in events])


@app.route('/api/sessions/<session_id>/hierarchy', methods=['GET'])
def get_hierarchy(session_id):
    """Flat hierarchy node list, optionally filtered by 'scopeId'."""
    session, error = _session_or_404(session_id)
    if error:
        return error
    nodes = session.hierarchy(request.args.get('scopeId'))
    return jsonify([node.to_dict() for node in nodes.values()])


@app.route('/api/sessions/<session_id>/hierarchy/tree', methods=['GET'])
def get_hierarchy_tree(session_id):
    """Nested hierarchy forest, optionally filtered by 'scopeId'."""
    session, error = _session_or_404(session_id)
    if error:
        return error
    forest = session.to_tree(request.args.get('scopeId'))
    return jsonify(TreeProjector.tree_to_dict(forest))


@app.route('/api/sessions/<session_id>/stats', methods=['GET'])
def get_stats(session_id):
    session, error = _session_or_404(session_id)
    if error:
        return error
    return jsonify(session.stats())


@app.route('/api/sessions/<session_id>/threads', methods=['GET'])
def get_thread_activity(session_id):
    session, error = _session_or_404(session_id)
    if error:
        return error
    return jsonify(session.thread_activity())


@app.route('/api/sessions/<session_id>/results', methods=['GET'])
def get_results(session_id):
    """Full JSON export of a session."""
    session, error = _session_or_404(session_id)
    if error:
        return error
    return jsonify(prepare_results(session))


@app.route('/api/sessions/<session_id>/coroutines/<coroutine_id>/timeline', methods=['GET'])
def get_timeline(session_id, coroutine_id):
    session, error = _session_or_404(session_id)
    if error:
        return error
    if session.get_node(coroutine_id) is None:
        return jsonify({'error': f"Coroutine '{coroutine_id}' not found"}), 404

    timeline = session.timeline(coroutine_id)
    data = timeline.to_dict()
    data['suspensionPoints'] = timeline.suspension_points()
    data['dispatcherSwitchList'] = timeline.dispatcher_switch_list()
    return jsonify(data)


@app.route('/api/sessions/<session_id>/coroutines/<coroutine_id>/relations', methods=['GET'])
def get_relations(session_id, coroutine_id):
    session, error = _session_or_404(session_id)
    if error:
        return error

    relations = session.relations(coroutine_id)
    if relations['coroutine'] is None:
        return jsonify({'error': f"Coroutine '{coroutine_id}' not found"}), 404

    return jsonify({
        'coroutine': relations['coroutine'].to_dict(),
        'parent': relations['parent'].to_dict() if relations['parent'] else None,
        'children': [n.to_dict() for n in relations['children']],
        'siblings': [n.to_dict() for n in relations['siblings']],
        'hasParent': relations['has_parent'],
        'hasChildren': relations['has_children'],
        'hasSiblings': relations['has_siblings'],
    })


if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=5001)
