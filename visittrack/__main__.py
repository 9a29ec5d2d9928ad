import logging

import uvicorn

from visittrack.config import settings


def main() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("visittrack.main:app", host=settings.app_host, port=settings.app_port)


if __name__ == "__main__":
    main()
