"""FastAPI server exposing the fleet manager over HTTP."""
