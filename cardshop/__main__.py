# python -m cardshop [--host HOST] [--port PORT]
import argparse
import os

import uvicorn


def main() -> None:
    ap = argparse.ArgumentParser(description="Run the card shop server")
    ap.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    ap.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    args = ap.parse_args()

    # a single process: the sqlite file and the DB gate are per process
    config = uvicorn.Config("cardshop.server:app", host=args.host,
                            port=args.port, log_config=None)
    uvicorn.Server(config).run()


if __name__ == "__main__":
    main()
