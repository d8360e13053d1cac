import logging
import os

import uvicorn

if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("prtg_connector.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8001")), reload=False)
