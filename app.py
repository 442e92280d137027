from flask import Flask, request, jsonify
from dotenv import load_dotenv
import logging

load_dotenv()
from config import Config
from database import init_db
from utils import get_schema_info, format_schema_context, count_patients
from agents.audit import SqlAuditLogger
from agents.orchestrator import AgentLoopOrchestrator
from agents.reasoning import ReasoningServiceClient
from agents.tools import SimilaritySearchTool, ExploratoryQueryTool
from agents.validator import SqlSafetyValidator

logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
logger = logging.getLogger(__name__)


def create_app(config_class=Config, reasoning=None):
    app = Flask(__name__)
    app.config.from_object(config_class)

    init_db(app)

    # Initialize Agents
    validator = SqlSafetyValidator.from_config(config_class)
    reasoning = reasoning or ReasoningServiceClient.from_config(config_class)
    audit_logger = SqlAuditLogger(model=config_class.SQL_GENERATOR_MODEL)
    search_tool = SimilaritySearchTool(
        default_limit=config_class.AGENTIC_FUZZY_SEARCH_LIMIT,
        similarity_threshold=config_class.AGENTIC_SIMILARITY_THRESHOLD,
    )
    exploratory_tool = ExploratoryQueryTool(
        validator,
        row_limit=config_class.AGENTIC_EXPLORATORY_SQL_LIMIT,
        statement_timeout_ms=config_class.EXPLORATORY_STATEMENT_TIMEOUT_MS,
    )

    def new_orchestrator():
        # One orchestrator (and one ConversationState) per request
        return AgentLoopOrchestrator(
            reasoning, search_tool, exploratory_tool, validator, audit_logger,
            max_iterations=config_class.AGENTIC_MAX_ITERATIONS,
            timeout_ms=config_class.AGENTIC_TIMEOUT_MS,
        )

    @app.route('/health', methods=['GET'])
    def health_check():
        return jsonify({"status": "healthy"}), 200

    @app.route('/schema', methods=['GET'])
    def schema_introspection():
        """
        Helper endpoint to view the schema introspection result.
        """
        return jsonify(get_schema_info())

    @app.route('/sql-generator', methods=['POST'])
    def sql_generator():
        data = request.get_json(silent=True) or {}
        question = data.get('question')
        if not question or not isinstance(question, str):
            return jsonify({"error": "Missing 'question' field"}), 400
        patient_id = data.get('patient_id') or None

        decision = new_orchestrator().run(
            question=question,
            schema_context=format_schema_context(get_schema_info()),
            selected_patient_id=patient_id,
            patient_count=count_patients(),
            user_identifier=data.get('user_id') or request.remote_addr,
        )
        return jsonify(decision.to_response()), 200

    @app.route('/validate-sql', methods=['POST'])
    def validate_sql():
        data = request.get_json(silent=True) or {}
        sql = data.get('sql')
        if not sql:
            return jsonify({"error": "Missing 'sql' field"}), 400

        outcome = validator.validate_candidate(sql, data.get('patient_id') or None, count_patients())
        if outcome.valid:
            return jsonify({"valid": True, "sql": outcome.sql}), 200
        return jsonify({
            "valid": False,
            "violation_code": outcome.violation_code,
            "message": outcome.message,
            "violations": outcome.violation_dicts(),
        }), 200

    @app.route('/audit', methods=['GET'])
    def audit():
        limit = request.args.get('limit', 50, type=int)
        return jsonify(audit_logger.recent(limit=max(1, min(limit, 200))))

    return app


app = create_app()

if __name__ == '__main__':
    app.run(debug=True, port=5001)
