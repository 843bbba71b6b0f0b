# Overview: WSGI entrypoint; FLASK_APP=wsgi.py for the CLI, wsgi:app for a server.
from dairy import create_app

app = create_app()
