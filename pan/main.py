# pan/main.py
import os

import uvicorn

from pan.core.app import create_app

app = create_app()

if __name__ == "__main__":
    uvicorn.run("pan.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8080")), reload=False)
