import os
from dotenv import load_dotenv


dotenv_path = os.path.join(os.path.dirname(__file__), ".env")
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path)

from chatcanvas import create_app  # noqa: E402


app = create_app()

if __name__ == "__main__":
    app.run(host="localhost", port=8080, debug=app.config.get("DEBUG", False))
