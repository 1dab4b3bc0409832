# Heavy Metal Pollution Indices API - engine adapter for the dashboard
import os
import signal
import sys
from typing import Any, Dict
from datetime import datetime

from flask import Flask, jsonify, request, make_response
from flask_cors import CORS

from engine_errors import ParseError, SchemaError, UnknownIndexError
from engine_settings import INDEX_IDS, INDEX_LABELS, METALS, load_settings
from pollution_engine import PollutionIndexEngine, export_indices_csv, export_locations_csv
from sample_validation import read_samples_csv
from standard_formulas import describe_indices

# Logging configuration
import logging
logging.basicConfig(level=os.environ.get('METALSENSE_LOG_LEVEL', 'INFO').upper())
logger = logging.getLogger(__name__)

# Global engine, built on first use from the environment
_engine = None


def get_engine() -> PollutionIndexEngine:
    """Get or create the process-wide engine"""
    global _engine
    if _engine is None:
        _engine = PollutionIndexEngine.from_settings(load_settings())
    return _engine


def _error(message: str, status: int, **extra):
    body = {"success": False, "error": message, "timestamp": datetime.now().isoformat()}
    body.update(extra)
    return jsonify(body), status


def _read_rows():
    """Rows from a multipart upload, a text/csv body or JSON {"rows": [...]}"""
    if 'file' in request.files:
        return read_samples_csv(request.files['file'].read()), None
    if request.mimetype == 'text/csv':
        return read_samples_csv(request.get_data()), None
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not isinstance(payload.get('rows'), list):
        return None, None
    return payload['rows'], payload.get('columns')


def _csv_response(text: str, filename: str):
    resp = make_response(text)
    resp.headers['Content-Type'] = 'text/csv; charset=utf-8'
    resp.headers['Content-Disposition'] = f'attachment; filename={filename}'
    return resp


# Flask application
app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = int(os.environ.get('METALSENSE_MAX_UPLOAD_MB', '10')) * 1024 * 1024

CORS(app, resources={
    r"/api/*": {
        "origins": ["http://localhost:3000", "http://localhost:5173", "http://localhost:8080"],
        "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        "allow_headers": ["Content-Type", "Authorization"]
    },
    r"/process-csv": {"origins": "*", "methods": ["POST", "OPTIONS"]}
})


@app.errorhandler(SchemaError)
def handle_schema_error(e: SchemaError):
    logger.warning(f"Dataset rejected: {e}")
    return _error(str(e), 400, missingColumns=e.missing_columns)


@app.errorhandler(ParseError)
def handle_parse_error(e: ParseError):
    return _error(str(e), 400, position=e.position, reason=e.reason, token=e.token)


@app.errorhandler(UnknownIndexError)
def handle_unknown_index(e: UnknownIndexError):
    return _error(str(e), 404, knownIndices=list(INDEX_IDS))


@app.route('/health', methods=['GET'])
def health():
    return jsonify({
        "status": "healthy",
        "service": "Heavy Metal Pollution Index Engine",
        "version": "1.0.0",
        "timestamp": datetime.now().isoformat()
    })


@app.route('/api/analyze', methods=['POST'])
@app.route('/process-csv', methods=['POST'])
def analyze():
    """
    Compute pollution indices for an uploaded dataset
    Body: multipart `file`, a text/csv body, or JSON {"rows": [...], "columns": [...]}
    Query parameters:
    - format: `json` (default), `csv` (dataset indices) or `locations-csv`
    """
    try:
        logger.info("Received analysis request")
        rows, columns = _read_rows()
        if rows is None:
            return _error("Expected a CSV upload or a JSON body with a 'rows' list", 400)

        result = get_engine().compute_dataset(rows, columns=columns)

        output = request.args.get('format', 'json')
        if output == 'csv':
            return _csv_response(export_indices_csv(result), 'pollution_indices_results.csv')
        if output == 'locations-csv':
            return _csv_response(export_locations_csv(result), 'pollution_indices_locations.csv')

        payload: Dict[str, Any] = {"success": True}
        payload.update(result)
        payload["timestamp"] = datetime.now().isoformat()
        logger.info("Sending analysis response")
        return jsonify(payload)

    except SchemaError:
        raise
    except Exception as e:
        logger.error(f"Analysis error: {e}", exc_info=True)
        return _error(str(e), 500)


@app.route('/api/formulas', methods=['GET'])
def list_formulas():
    return jsonify({
        "success": True,
        "formulas": [definition.to_dict() for definition in get_engine().list_formulas()]
    })


@app.route('/api/formulas/<index_id>', methods=['GET'])
def get_formula(index_id):
    return jsonify({"success": True, "formula": get_engine().store.get(index_id).to_dict()})


@app.route('/api/formulas/<index_id>', methods=['PUT', 'POST'])
def set_formula(index_id):
    """Replace the formula of one index; rejected text leaves the old one active"""
    payload = request.get_json(silent=True) or {}
    expression = payload.get('expression')
    if not isinstance(expression, str) or not expression.strip():
        return _error("Please provide a non-empty 'expression'", 400)
    definition = get_engine().set_formula(index_id, expression)
    return jsonify({"success": True, "formula": definition.to_dict()})


@app.route('/api/formulas/<index_id>/validate', methods=['POST'])
def validate_formula(index_id):
    """Check a formula without activating it"""
    payload = request.get_json(silent=True) or {}
    expression = payload.get('expression')
    if not isinstance(expression, str) or not expression.strip():
        return _error("Please provide a non-empty 'expression'", 400)
    compiled = get_engine().validate_formula(index_id, expression)
    return jsonify({
        "success": True,
        "valid": True,
        "indexId": index_id,
        "variables": sorted(compiled.variables),
        "nodeCount": compiled.node_count
    })


@app.route('/api/formulas/<index_id>', methods=['DELETE'])
def reset_formula(index_id):
    definition = get_engine().reset_formula(index_id)
    return jsonify({"success": True, "formula": definition.to_dict()})


@app.route('/api/indices-info', methods=['GET'])
def indices_info():
    """Get information about pollution indices"""
    engine = get_engine()
    info = describe_indices()
    for index_id in INDEX_IDS:
        info[INDEX_LABELS[index_id]]["thresholds"] = [
            {
                "tier": band.tier,
                "lower": None if band.lower == float('-inf') else band.lower,
                "upper": None if band.upper == float('inf') else band.upper,
            }
            for band in engine.reference.thresholds[index_id]
        ]
    return jsonify({
        "indices": info,
        "primaryIndex": INDEX_LABELS[engine.reference.primary_index],
        "metals": {
            metal: {
                "name": metal,
                "permissible_limit": engine.reference.standards[metal].permissible_limit,
                "ideal_value": engine.reference.standards[metal].ideal_value,
                "background_value": engine.reference.standards[metal].background,
                "unit": "mg/L"
            }
            for metal in METALS
        }
    })


def signal_handler(sig, frame):
    logger.info('Gracefully shutting down Flask server')
    sys.exit(0)


if __name__ == '__main__':
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    settings = load_settings()
    _engine = PollutionIndexEngine.from_settings(settings)
    app.config['MAX_CONTENT_LENGTH'] = settings.max_upload_mb * 1024 * 1024

    logger.info(f"Starting Heavy Metal Pollution Index Engine on {settings.host}:{settings.port}")
    logger.info("Available endpoints:")
    logger.info("  POST /api/analyze - Compute indices for a dataset")
    logger.info("  GET /api/formulas - List active formulas")
    logger.info("  PUT /api/formulas/<index_id> - Override a formula")
    logger.info("  POST /api/formulas/<index_id>/validate - Check a formula without storing it")
    logger.info("  DELETE /api/formulas/<index_id> - Reset a formula to default")
    logger.info("  GET /api/indices-info - Index information")
    logger.info("  GET /health - Health check")

    app.run(host=settings.host, port=settings.port, debug=settings.debug, threaded=True)
