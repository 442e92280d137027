from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
import uuid

db = SQLAlchemy()

def _new_id():
    return str(uuid.uuid4())

class Patient(db.Model):
    __tablename__ = 'patients'
    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    full_name = db.Column(db.String(200))
    date_of_birth = db.Column(db.String(20)) # As printed on the report
    gender = db.Column(db.String(10))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    lab_results = db.relationship('LabResult', backref='patient', lazy=True)

class LabResult(db.Model):
    __tablename__ = 'lab_results'
    id = db.Column(db.Integer, primary_key=True)
    patient_id = db.Column(db.String(36), db.ForeignKey('patients.id'), nullable=False, index=True)
    parameter_name = db.Column(db.String(200), nullable=False)
    result_value = db.Column(db.String(50)) # Raw text, e.g. "< 2" or "25,3"
    unit = db.Column(db.String(30))
    reference_lower = db.Column(db.Float)
    reference_upper = db.Column(db.Float)
    is_out_of_range = db.Column(db.Boolean)
    test_date = db.Column(db.DateTime)

class SqlGenerationLog(db.Model):
    __tablename__ = 'sql_generation_logs'
    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.String(36), index=True)
    status = db.Column(db.String(20)) # success, failed
    user_id_hash = db.Column(db.String(64))
    prompt = db.Column(db.Text)
    generated_sql = db.Column(db.Text)
    error_code = db.Column(db.String(50))
    violation_code = db.Column(db.String(50))
    duration_ms = db.Column(db.Integer)
    log_metadata = db.Column('metadata', db.Text) # JSON snapshot of the iteration trace
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

def init_db(app, create_tables=False):
    db.init_app(app)
    if create_tables:
        with app.app_context():
            db.create_all()
