"""HTTP surface (FastAPI) for authorization, availability and calendar events."""
