"""
asgi.py -- Application assembly for the Avtopark identity service.

This is the ONLY file that imports from both api/ and web/. api/main.py knows
nothing about the HTML pages; web/routes.py reaches the services only through
app.state.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from web.routes import router as web_router

app.include_router(web_router, tags=["Web"])
