"""SupportDesk backend server entry point."""

import os

import uvicorn
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

if __name__ == "__main__":
    # Use 0.0.0.0 only if the API must be reachable from other machines
    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", 8000))
    debug = os.getenv("DEBUG", "false").lower() == "true"

    print(f"Starting SupportDesk API server on {host}:{port}")
    uvicorn.run("supportdesk.main:app", host=host, port=port, reload=debug)
