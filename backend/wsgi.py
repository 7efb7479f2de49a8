# backend/wsgi.py
from mandi import create_app

app = create_app()
