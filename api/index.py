import os
import sys

# Serverless entrypoint: the project root must be importable
root_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if root_dir not in sys.path:
    sys.path.append(root_dir)

from timeline_crm.app import create_app  # noqa: E402

app = create_app()
