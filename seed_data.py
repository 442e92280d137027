from app import app
from database import db, Patient, LabResult
from sqlalchemy import text
from datetime import datetime

def seed_data():
    with app.app_context():
        print("Enabling pg_trgm...")
        db.session.execute(text("CREATE EXTENSION IF NOT EXISTS pg_trgm"))
        db.session.commit()

        print("Dropping all tables...")
        db.drop_all()
        print("Creating all tables...")
        db.create_all()

        print("Seeding data...")

        # Patients
        p1 = Patient(id='11111111-1111-1111-1111-111111111111', full_name='Anna Petrova',
                     date_of_birth='1985-03-14', gender='F')
        p2 = Patient(id='22222222-2222-2222-2222-222222222222', full_name='John Miller',
                     date_of_birth='1972-11-02', gender='M')
        db.session.add_all([p1, p2])
        db.session.commit()

        # Lab results, names as printed by different labs
        labs = [
            (p1, 'Витамин D (25-OH)', '18,4', 'ng/mL', 30, 100, True, datetime(2024, 1, 10)),
            (p1, 'Vitamin D, 25-Hydroxy', '32.1', 'ng/mL', 30, 100, False, datetime(2024, 6, 2)),
            (p1, 'Glucose', '5.1', 'mmol/L', 3.9, 5.6, False, datetime(2024, 6, 2)),
            (p1, 'HbA1c', '5.4', '%', 4.0, 5.7, False, datetime(2024, 6, 2)),
            (p2, 'Vitamin D 25(OH)', '< 8', 'ng/mL', 30, 100, True, datetime(2024, 3, 21)),
            (p2, 'Cholesterol, total', '6.2', 'mmol/L', 0, 5.2, True, datetime(2024, 3, 21)),
            (p2, 'Glucose (fasting)', '6,3', 'mmol/L', 3.9, 5.6, True, datetime(2024, 3, 21)),
        ]
        db.session.add_all([
            LabResult(patient_id=patient.id, parameter_name=name, result_value=value, unit=unit,
                      reference_lower=lower, reference_upper=upper, is_out_of_range=flag, test_date=when)
            for patient, name, value, unit, lower, upper, flag, when in labs
        ])
        db.session.commit()

        print("Data seeded successfully.")

if __name__ == '__main__':
    seed_data()
