import os
import tempfile

# Importing practiceroom attaches a file handler; keep it out of the home directory.
os.environ.setdefault("PRACTICEROOM_LOG_DIR", tempfile.mkdtemp(prefix="practiceroom-logs-"))
