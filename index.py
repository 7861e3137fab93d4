import os

from encimg.app import create_app
from encimg.config import Settings

# Run with: uvicorn index:app
app = create_app(Settings.from_env(os.environ))
