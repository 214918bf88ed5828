"""FastAPI operational surface: health, metrics and emergency stop."""
