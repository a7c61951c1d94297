"""Run the API with uvicorn: ``python -m tooltrust`` or the ``tooltrust`` script."""

import uvicorn

from tooltrust.config import settings


def main() -> None:
    uvicorn.run(
        "tooltrust.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
