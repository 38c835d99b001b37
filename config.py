# config.py
import os

class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///perfumeria.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # API JSON: sin formularios HTML, sin CSRF
    WTF_CSRF_ENABLED = False
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    OPERATOR_HEADER = os.getenv("OPERATOR_HEADER", "X-Operator-Id")
    SALE_NUMBER_MAX_RETRIES = int(os.getenv("SALE_NUMBER_MAX_RETRIES", "5"))
    SEED_DEFAULT_OPERATOR = os.getenv("SEED_DEFAULT_OPERATOR", "1") == "1"
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
