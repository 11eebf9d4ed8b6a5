import os
import sys


# Tests import `backend.*` and `pos_agent.*`; make the repo root importable even
# when pytest is started from inside `backend/`.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)
