import os
import tempfile

# config.get_settings() creates the data dir on import of database.py
os.environ.setdefault("FINANZAS_DATA_DIR", tempfile.mkdtemp(prefix="finanzas-tests-"))
os.environ.setdefault("FINANZAS_API_URL", "http://api.test")
