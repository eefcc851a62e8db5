import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shop_relay.api import link_routes, webhook_routes
from shop_relay.db.migrations.create_tables import create_tables

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

app = FastAPI(title="Shopify relay account linking service")
app.include_router(link_routes.router, prefix="/relay", tags=["relay_linking"])
app.include_router(webhook_routes.router, prefix="/webhooks", tags=["shopify_webhooks"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    create_tables()


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port)
