# main.py
# Entrypoint for `uvicorn main:app`
from campusride.main import create_app

app = create_app()
