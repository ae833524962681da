import os

import uvicorn

from dependabot_server.config import settings
from dependabot_server.main import configure_logging
from dependabot_server.main import create_app


def main() -> None:
    configure_logging(settings.log_level)
    port = int(os.getenv("PORT", "8080"))
    uvicorn.run(create_app(settings), host="0.0.0.0", port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
