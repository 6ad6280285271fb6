"""WSGI entrypoint for development and production (project root).

This file creates the Flask application by calling create_app() from
the `backend.app` package. Placing the entrypoint at the repository root
makes it straightforward to reference as `wsgi:app` from Gunicorn or other
WSGI servers.

Usage examples:
  - Development: python -m flask --app wsgi:app run --debug
  - Gunicorn:   gunicorn -c gunicorn.conf.py wsgi:app
"""
import logging
import os

from dotenv import load_dotenv
from backend.app import create_app
from backend.app.config import config

# Load environment variables from .env (if present)
load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

# Create the Flask application
app = create_app(config[os.environ.get('FLASK_CONFIG', 'default')])

if __name__ == '__main__':
    # Run development server when executed directly
    app.run(debug=True)
