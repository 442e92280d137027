import os

class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-key-for-demo'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'postgresql://localhost/lab_results'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    OPENAI_API_KEY = os.environ.get('OPENAI_API_KEY')
    SQL_GENERATOR_MODEL = os.environ.get('SQL_GENERATOR_MODEL') or 'gpt-4o-mini'

    # Agent loop
    AGENTIC_MAX_ITERATIONS = int(os.environ.get('AGENTIC_MAX_ITERATIONS') or 5)
    AGENTIC_TIMEOUT_MS = int(os.environ.get('AGENTIC_TIMEOUT_MS') or 120000)

    # Tools
    AGENTIC_FUZZY_SEARCH_LIMIT = int(os.environ.get('AGENTIC_FUZZY_SEARCH_LIMIT') or 20)
    AGENTIC_EXPLORATORY_SQL_LIMIT = int(os.environ.get('AGENTIC_EXPLORATORY_SQL_LIMIT') or 20)
    AGENTIC_SIMILARITY_THRESHOLD = float(os.environ.get('AGENTIC_SIMILARITY_THRESHOLD') or 0.3)
    EXPLORATORY_STATEMENT_TIMEOUT_MS = int(os.environ.get('EXPLORATORY_STATEMENT_TIMEOUT_MS') or 5000)

    # Validator
    SQL_DEFAULT_ROW_LIMIT = int(os.environ.get('SQL_DEFAULT_ROW_LIMIT') or 50)
    SQLGEN_MAX_JOINS = int(os.environ.get('SQLGEN_MAX_JOINS') or 5)
    SQLGEN_MAX_SUBQUERIES = int(os.environ.get('SQLGEN_MAX_SUBQUERIES') or 2)
    SQLGEN_MAX_AGG_FUNCS = int(os.environ.get('SQLGEN_MAX_AGG_FUNCS') or 10)
    SQL_POLICY_PATH = os.environ.get('SQL_POLICY_PATH') or 'policies.yaml'
    SQL_EXPLAIN_CHECK = (os.environ.get('SQL_EXPLAIN_CHECK') or 'true').lower() == 'true'
    SQL_EXPLAIN_TIMEOUT_MS = int(os.environ.get('SQL_EXPLAIN_TIMEOUT_MS') or 1000)
