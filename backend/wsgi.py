# backend/wsgi.py
from pharmastock import create_app

app = create_app()
