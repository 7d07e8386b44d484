# backend/wsgi.py
from boxoffice import create_app

app = create_app()
