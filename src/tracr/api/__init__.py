# Tracr API - FastAPI backend for agents and the dashboard
