from flask import Flask, request, jsonify, make_response
import os
import json
import base64
import logging

from dotenv import load_dotenv
from flask_cors import CORS

load_dotenv()

import auth
import automations
import bank_extraction
import bank_statements
import bulk_download
import bulk_extraction
import document_extraction
import export_utils
import file_detection
import payroll_slips
import reports
import statement_periods
from api_keys import key_pool
from middleware import jwt_required, admin_required, get_current_user
from storage import download_from_s3

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

API_VERSION = '1.0'

app = Flask(__name__)
CORS(app, resources={
    r"/api/*": {
        "origins": ["*"],
        "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        "allow_headers": ["Content-Type", "Authorization"],
        "expose_headers": ["Content-Disposition", "X-Download-Logs", "X-Download-Status"],
        "supports_credentials": True
    }
})

XLSX_CONTENT_TYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


def _attachment(content, filename, content_type):
    response = make_response(content)
    response.headers['Content-Type'] = content_type
    response.headers['Content-Disposition'] = f'attachment; filename={filename}'
    return response


def _status_code(result, failure_code=400):
    return 200 if result.get("success") else failure_code


@app.route('/')
def home():
    return jsonify({
        "message": "Bank Statement & Compliance Reports API",
        "version": API_VERSION,
        "available_endpoints": {
            "Authentication": {
                "/api/auth/login": "POST - User login with JWT",
                "/api/auth/refresh": "POST - Refresh JWT token",
                "/api/auth/logout": "POST - User logout",
                "/api/auth/me": "GET - Get current user info",
                "/api/auth/users": "POST - Create user account (admin)"
            },
            "Bank Statements": {
                "/api/banks": "GET - List banks",
                "/api/bank-statements": "GET - List statements",
                "/api/bank-statements/extract": "POST - Extract a statement stored in S3",
                "/api/bank-statements/bulk-extract": "POST - Extract headline details of many statements",
                "/api/bank-statements/detect-file-info": "POST - Detect password/account/bank from a file name",
                "/api/bank-statements/validate-period": "POST - Check a statement period against a month",
                "/api/bank-statements/export": "POST - Zip selected statement files",
                "/api/bank-statements/export/analyze": "POST - Summarize an export selection",
                "/api/bank-statements/health": "GET - Extraction service health"
            },
            "Documents": {
                "/api/documents/extract": "POST - Extract configured fields from a document",
                "/api/documents/extract-batch": "POST - Extract fields from several documents"
            },
            "Payroll": {
                "/api/payroll/slips": "GET - Payment slip summaries",
                "/api/payroll/bulk-download": "POST - Zip payroll returns of all companies"
            },
            "Reports": {
                "/api/reports": "GET - Available reports",
                "/api/reports/<report>": "GET - Report rows",
                "/api/reports/<report>/download/excel": "POST - Report as Excel",
                "/api/reports/<report>/download/csv": "POST - Report as CSV"
            },
            "Automations": {
                "/api/automations/<type>/trigger": "POST - Start an automation run",
                "/api/automations/runs": "GET - List automation runs",
                "/api/automations/runs/<run_id>": "GET - Automation run details",
                "/api/automations/runs/<run_id>/status": "PUT - Update run status (webhook callback)"
            }
        }
    })


@app.route('/health')
@app.route('/api/health')
def health():
    return jsonify({
        'status': 'healthy',
        'message': 'Bank Statement & Compliance Reports API is running',
        'version': API_VERSION,
        'api_keys': key_pool.status()
    })

# ================================
# AUTHENTICATION ROUTES
# ================================

@app.route("/api/auth/login", methods=["POST"])
def login():
    """Authenticate user and return JWT token"""
    try:
        data = request.get_json(silent=True) or {}

        if not data.get('username') or not data.get('password'):
            return jsonify({
                "success": False,
                "error": "Username and password are required"
            }), 400

        result = auth.authenticate_user(data['username'].strip(), data['password'])
        return jsonify(result), _status_code(result, 401)

    except Exception as e:
        print(f"❌ Login error: {e}")
        return jsonify({"success": False, "error": "Login failed"}), 500


@app.route("/api/auth/refresh", methods=["POST"])
def refresh_token():
    try:
        data = request.get_json(silent=True) or {}
        current_token = data.get('token')

        if not current_token:
            return jsonify({"success": False, "error": "Token is required"}), 400

        result = auth.refresh_token(current_token)
        return jsonify(result), _status_code(result, 401)

    except Exception as e:
        print(f"❌ Token refresh error: {e}")
        return jsonify({"success": False, "error": "Token refresh failed"}), 500


@app.route("/api/auth/logout", methods=["POST"])
def logout():
    """Tokens are stateless; the client drops its copy"""
    return jsonify({"success": True, "message": "Logged out successfully"}), 200


@app.route("/api/auth/me", methods=["GET"])
@jwt_required
def get_current_user_info():
    return jsonify({"success": True, "user": get_current_user()}), 200


@app.route("/api/auth/users", methods=["POST"])
@jwt_required
@admin_required
def create_user():
    try:
        data = request.get_json(silent=True) or {}
        result = auth.create_user_account(data)
        return jsonify(result), 201 if result["success"] else 400
    except Exception as e:
        print(f"❌ Create user error: {e}")
        return jsonify({"success": False, "error": "User creation failed"}), 500

# ================================
# BANK STATEMENT ROUTES
# ================================

@app.route('/api/banks', methods=['GET'])
@jwt_required
def list_banks():
    try:
        result = bank_statements.list_banks(request.args.get('company_id'))
        return jsonify(result), _status_code(result, 500)
    except Exception as e:
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/bank-statements', methods=['GET'])
@jwt_required
def list_bank_statements():
    try:
        result = bank_statements.list_statements(
            bank_id=request.args.get('bank_id'),
            cycle_id=request.args.get('cycle_id')
        )
        return jsonify(result), _status_code(result, 500)
    except Exception as e:
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/bank-statements/extract', methods=['POST'])
@jwt_required
def extract_bank_statement():
    """
    Expected JSON body:
    {
        "s3_key": "statements/ACME/equity_jan_2024.pdf",
        "month": 1,
        "year": 2024,
        "bank_id": "...",          // Optional
        "password": "1234",        // Optional
        "bucket_name": "..."       // Optional
    }
    """
    try:
        if not request.is_json:
            return jsonify({"success": False, "error": "Request must be JSON"}), 400

        result = bank_extraction.main(request.get_json())
        if result.get("success"):
            return jsonify(result), 200
        if result.get("requires_password"):
            return jsonify(result), 422
        return jsonify(result), 400

    except Exception as e:
        print(f"❌ Bank statement extract endpoint error: {e}")
        return jsonify({"success": False, "error": "Internal server error"}), 500


@app.route('/api/bank-statements/health', methods=['GET'])
def bank_statements_health():
    try:
        result = bank_extraction.health_check()
        return jsonify(result), 200 if result.get("healthy") else 503
    except Exception as e:
        return jsonify({"healthy": False, "error": str(e)}), 503


@app.route('/api/bank-statements/bulk-extract', methods=['POST'])
@jwt_required
def bulk_extract_statements():
    """
    Expected JSON body:
    {
        "files": [{"index": 0, "file_name": "...", "s3_key": "...", "password": "..."}],
        "month": 1,
        "year": 2024
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        files = data.get('files') or []

        if not files:
            return jsonify({"success": False, "error": "No files provided"}), 400

        params = {"month": data.get('month'), "year": data.get('year')}
        result = bulk_extraction.process_bulk_extraction(files, params)

        return jsonify({"success": True, **result}), 200

    except Exception as e:
        print(f"❌ Bulk extraction error: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/bank-statements/detect-file-info', methods=['POST'])
@jwt_required
def detect_file_info():
    try:
        data = request.get_json(silent=True) or {}
        file_name = data.get('file_name')

        if not file_name:
            return jsonify({"success": False, "error": "file_name is required"}), 400

        detected = file_detection.detect_file_info(file_name)
        result = {
            "success": True,
            "detected": detected,
            "parsed": file_detection.parse_filename_advanced(file_name),
            "display_name": file_detection.format_file_name(file_name)
        }

        if data.get('bank_id'):
            bank = bank_statements.get_bank(data['bank_id'])
            if not bank:
                return jsonify({"success": False, "error": "Bank not found"}), 404
            result["matches"] = file_detection.validate_detected_info(
                detected.get('account_number'), detected.get('password'), bank
            )

        return jsonify(result), 200

    except Exception as e:
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/bank-statements/validate-period', methods=['POST'])
@jwt_required
def validate_statement_period():
    try:
        data = request.get_json(silent=True) or {}
        missing_fields = [f for f in ('statement_period', 'month', 'year') if not data.get(f)]
        if missing_fields:
            return jsonify({
                "success": False,
                "error": f"Missing required fields: {', '.join(missing_fields)}"
            }), 400

        validation = statement_periods.validate_statement_period_range(
            data['statement_period'], int(data['month']), int(data['year'])
        )
        period = statement_periods.parse_statement_period(data['statement_period'])

        return jsonify({
            "success": True,
            **validation,
            "display": statement_periods.format_period_display(period),
            "is_multi_month": statement_periods.is_multi_month_period(data['statement_period'])
        }), 200

    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "month and year must be integers"}), 400
    except Exception as e:
        return jsonify({'success': False, 'error': str(e)}), 500


def _export_selection(data):
    """Bank plus the selected statements of an export request"""
    bank = bank_statements.get_bank(data.get('bank_id'))
    if not bank:
        return None, None, "Bank not found"

    listing = bank_statements.list_statements(bank_id=bank['id'])
    if not listing["success"]:
        return None, None, listing["error"]

    statement_ids = data.get('statement_ids')
    statements = listing["statements"]
    if statement_ids:
        wanted = set(statement_ids)
        statements = [s for s in statements if s.get('id') in wanted]

    return bank, statements, None


@app.route('/api/bank-statements/export/analyze', methods=['POST'])
@jwt_required
def analyze_statement_export():
    try:
        data = request.get_json(silent=True) or {}
        bank, statements, error = _export_selection(data)
        if error:
            return jsonify({"success": False, "error": error}), 400

        return jsonify({
            "success": True,
            **export_utils.analyze_statements_for_export(statements)
        }), 200

    except Exception as e:
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/bank-statements/export', methods=['POST'])
@jwt_required
def export_statements():
    """Zip of the selected statements' PDF / Excel files"""
    try:
        data = request.get_json(silent=True) or {}
        bank, statements, error = _export_selection(data)
        if error:
            return jsonify({"success": False, "error": error}), 400

        if not statements:
            return jsonify({"success": False, "error": "No statements selected"}), 400

        company = {"company_name": bank.get('company_name', '')}
        content, filename = export_utils.create_zip_export(statements, company, bank, data.get('options'))

        return _attachment(content, filename, 'application/zip')

    except Exception as e:
        print(f"❌ Statement export error: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

# ================================
# DOCUMENT EXTRACTION ROUTES
# ================================

@app.route('/api/documents/extract', methods=['POST'])
@jwt_required
def extract_document():
    """
    Expected JSON body:
    {
        "s3_key": "kyc/ACME/certificate.pdf",
        "fields": [{"name": "pin", "label": "KRA PIN", "type": "text"}],
        "document_type": "KRA PIN Certificate",
        "upload_id": "...",        // Optional, saves the result when given
        "document_id": "..."       // Optional
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        missing_fields = [f for f in ('s3_key', 'fields', 'document_type') if not data.get(f)]
        if missing_fields:
            return jsonify({
                "success": False,
                "error": f"Missing required fields: {', '.join(missing_fields)}"
            }), 400

        file_name = data.get('file_name') or os.path.basename(data['s3_key'])
        content = download_from_s3(data['s3_key'], data.get('bucket_name'))

        result = document_extraction.perform_extraction(
            content, file_name, data['fields'], data['document_type']
        )

        if result["success"] and data.get('upload_id') and data.get('document_id'):
            result["storage"] = document_extraction.save_extracted_data(
                data['upload_id'], data['document_id'], result["extracted_data"]
            )

        return jsonify(result), _status_code(result, 422)

    except Exception as e:
        print(f"❌ Document extraction error: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/documents/extract-batch', methods=['POST'])
@jwt_required
def extract_document_batch():
    """documents: [{"s3_key", "type", "label", "file_name"?}]"""
    try:
        data = request.get_json(silent=True) or {}
        missing_fields = [f for f in ('documents', 'fields', 'document_type') if not data.get(f)]
        if missing_fields:
            return jsonify({
                "success": False,
                "error": f"Missing required fields: {', '.join(missing_fields)}"
            }), 400

        documents = []
        for doc in data['documents']:
            documents.append({
                "content": download_from_s3(doc['s3_key'], doc.get('bucket_name')),
                "file_name": doc.get('file_name') or os.path.basename(doc['s3_key']),
                "type": doc['type'],
                "label": doc.get('label', doc['type'])
            })

        result = document_extraction.perform_batch_extraction(documents, data['fields'], data['document_type'])
        return jsonify(result), _status_code(result, 422)

    except KeyError as e:
        return jsonify({"success": False, "error": f"Document is missing {e}"}), 400
    except Exception as e:
        print(f"❌ Batch document extraction error: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

# ================================
# PAYROLL ROUTES
# ================================

@app.route('/api/payroll/slips', methods=['GET'])
@jwt_required
def payroll_slip_summaries():
    try:
        result = payroll_slips.get_slip_summaries(request.args.get('payroll_cycle_id'))
        return jsonify(result), _status_code(result, 500)
    except Exception as e:
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/payroll/bulk-download', methods=['POST'])
@jwt_required
def payroll_bulk_download():
    """
    Expected JSON body:
    {
        "selected_docs": {"PAYE_PDF": true, "NSSF_Excel": true},
        "member_id": 12            // Optional
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        selected_docs = data.get('selected_docs') or {}

        if not any(selected_docs.values()):
            return jsonify({"success": False, "error": "No documents selected"}), 400

        result, error = bulk_download.bulk_download(selected_docs, data.get('member_id'))
        if result is None:
            return jsonify(error), 500

        response = _attachment(result["content"], result["filename"], 'application/zip')
        response.headers['X-Download-Logs'] = base64.b64encode(
            json.dumps({"logs": result["logs"], "errors": result["errors"]}).encode('utf-8')
        ).decode('ascii')
        response.headers['X-Download-Status'] = result["status"]
        return response

    except Exception as e:
        print(f"❌ Bulk download error: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

# ================================
# REPORT ROUTES
# ================================

@app.route('/api/reports', methods=['GET'])
@jwt_required
def available_reports():
    return jsonify({
        "success": True,
        "reports": [{"id": key, "title": source['title']} for key, source in reports.REPORT_SOURCES.items()]
    })


@app.route('/api/reports/<report>', methods=['GET'])
@jwt_required
def get_report(report):
    try:
        filters = {
            'category': request.args.get('category'),
            'status': request.args.get('status'),
            'search': request.args.get('search')
        }
        result = reports.list_report(report, filters)
        if not result["success"] and report not in reports.REPORT_SOURCES:
            return jsonify(result), 404
        return jsonify(result), _status_code(result, 500)
    except Exception as e:
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/reports/<report>/download/excel', methods=['POST'])
@jwt_required
def download_report_excel(report):
    try:
        data = request.get_json(silent=True) or {}
        content, filename = reports.download_report_excel(report, data)

        if content is None:
            return jsonify(filename), 400

        return _attachment(content, filename, XLSX_CONTENT_TYPE)

    except Exception as e:
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/reports/<report>/download/csv', methods=['POST'])
@jwt_required
def download_report_csv(report):
    try:
        data = request.get_json(silent=True) or {}
        csv_content, filename = reports.download_report_csv(report, data)

        if csv_content is None:
            return jsonify(filename), 400

        return _attachment(csv_content, filename, 'text/csv')

    except Exception as e:
        return jsonify({'success': False, 'error': str(e)}), 500

# ================================
# AUTOMATION ROUTES
# ================================

@app.route('/api/automations/<automation_type>/trigger', methods=['POST'])
@jwt_required
def trigger_automation(automation_type):
    try:
        data = request.get_json(silent=True) or {}
        result = automations.trigger_automation(automation_type, data, get_current_user())
        return jsonify(result), _status_code(result, 400)
    except Exception as e:
        print(f"❌ Trigger automation error: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/automations/runs', methods=['GET'])
@jwt_required
def list_automation_runs():
    try:
        result = automations.list_automation_runs(request.args.get('automation_type'))
        return jsonify(result), _status_code(result, 500)
    except Exception as e:
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/automations/runs/<run_id>', methods=['GET'])
@jwt_required
def get_automation_run(run_id):
    try:
        result = automations.get_automation_run(run_id)
        return jsonify(result), _status_code(result, 404)
    except Exception as e:
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/automations/runs/<run_id>/status', methods=['PUT'])
def update_automation_status(run_id):
    """Called by the automation webhook - no auth required"""
    try:
        data = request.get_json(silent=True) or {}
        if not data.get('status'):
            return jsonify({"success": False, "error": "status is required"}), 400

        result = automations.update_automation_status(run_id, data['status'], data.get('logs'))
        return jsonify(result), _status_code(result, 400)

    except Exception as e:
        print(f"❌ Update automation status error: {e}")
        return jsonify({"success": False, "error": "Failed to update automation status"}), 500


@app.route('/api/extraction/api-keys', methods=['GET'])
@jwt_required
@admin_required
def api_key_status():
    return jsonify({"success": True, "keys": key_pool.status(), "total": len(key_pool)})

# ================================
# ERROR HANDLERS
# ================================

@app.errorhandler(401)
def unauthorized(error):
    return jsonify({"success": False, "error": "Authentication required"}), 401


@app.errorhandler(403)
def forbidden(error):
    return jsonify({"success": False, "error": "Insufficient permissions"}), 403


@app.errorhandler(404)
def not_found(error):
    return jsonify({'success': False, 'error': 'Endpoint not found'}), 404


@app.errorhandler(500)
def internal_error(error):
    return jsonify({'success': False, 'error': 'Internal server error'}), 500


@app.errorhandler(400)
def bad_request(error):
    return jsonify({'success': False, 'error': 'Bad request - check your JSON format'}), 400


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8080))
    debug = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    app.run(host='0.0.0.0', port=port, debug=debug)
