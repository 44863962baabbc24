"""Pipeline trigger routes.

Lets the gallery front end ask for an incremental update or a full
repopulate of the image database, each followed by thumbnail generation.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request, Response

from utils.database import get_store_summary
from utils.logging import get_logger
from utils.pipeline import STEP_GATE, PipelineResult, get_pipeline_runner

logger = get_logger('skyarchive.routes.pipeline')

pipeline_bp = Blueprint('pipeline', __name__, url_prefix='/api')


def _respond(result: PipelineResult) -> tuple[Response, int]:
    if result.updated:
        status = 200
    elif result.step == STEP_GATE:
        status = 429
    else:
        status = 500
    return jsonify(result.to_dict()), status


@pipeline_bp.route('/update', methods=['POST'])
def run_update():
    """Ingest new passes and generate their thumbnails.

    Returns:
        200 when the run completed, 429 when another run is in flight or
        the cooldown has not expired, 500 when a phase failed (``step`` is
        'db-update' or 'thumbgen').
    """
    return _respond(get_pipeline_runner().run_update())


@pipeline_bp.route('/repopulate', methods=['POST'])
def run_repopulate():
    """Reload every pass from disk and generate missing thumbnails.

    JSON body:
        {
            "rebuild": false    // Drop and recreate the schema first
        }
    """
    data = request.get_json(silent=True) or {}
    rebuild = bool(data.get('rebuild', False))
    return _respond(get_pipeline_runner().run_repopulate(rebuild=rebuild))


@pipeline_bp.route('/pipeline/status')
def pipeline_status():
    """Current run state plus database totals."""
    status = get_pipeline_runner().get_status()
    try:
        status['store'] = get_store_summary()
    except Exception as e:
        logger.error(f"Error reading store summary: {e}")
        status['store'] = None
    return jsonify(status)
