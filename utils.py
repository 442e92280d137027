import hashlib
from database import db, Patient, LabResult
from sqlalchemy import inspect

def get_schema_info():
    """
    Introspects the SQLAlchemy models to return a JSON-serializable schema representation.
    Only tables the reasoning service may query are listed; the generation log is left out.
    """
    models = [Patient, LabResult]
    schema_info = {"tables": {}}

    for model in models:
        table_name = model.__tablename__
        columns = {}
        pks = []
        fks = {}

        mapper = inspect(model)

        for column in mapper.columns:
            # Simplified type mapping for LLM context
            col_type = str(column.type).lower()
            if 'int' in col_type: col_type = 'int'
            elif 'char' in col_type or 'string' in col_type or 'text' in col_type: col_type = 'text'
            elif 'date' in col_type or 'time' in col_type: col_type = 'timestamp'
            elif 'float' in col_type or 'real' in col_type or 'double' in col_type: col_type = 'float'
            elif 'bool' in col_type: col_type = 'boolean'

            columns[column.name] = col_type
            if column.primary_key:
                pks.append(column.name)
            for fk in column.foreign_keys:
                fks[column.name] = fk.target_fullname

        schema_info["tables"][table_name] = {
            "columns": columns,
            "pks": pks,
            "fks": fks
        }

    return schema_info

def format_schema_context(schema_info):
    """Renders the introspected schema as the markdown block placed in the system message."""
    lines = []
    for table_name, table in schema_info.get("tables", {}).items():
        lines.append(f"### {table_name}")
        for col, col_type in table.get("columns", {}).items():
            notes = []
            if col in table.get("pks", []):
                notes.append("primary key")
            if col in table.get("fks", {}):
                notes.append(f"references {table['fks'][col]}")
            suffix = f" ({', '.join(notes)})" if notes else ""
            lines.append(f"- {col}: {col_type}{suffix}")
        lines.append("")
    return "\n".join(lines).strip()

def count_patients():
    """
    Current number of patients. Read on every request and never cached: a patient
    ingested after a session started must still trigger patient scoping.
    """
    return db.session.query(Patient).count()

def create_hash(value):
    if not value:
        return None
    return hashlib.sha256(str(value).encode('utf-8')).hexdigest()
