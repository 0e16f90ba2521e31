import uvicorn
from dotenv import load_dotenv

# Load .env before settings are read
load_dotenv()

from app.core.application import create_app  # noqa: E402
from app.core.config import settings  # noqa: E402

app = create_app(settings)


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
