from fastapi import FastAPI
from tortoise.contrib.fastapi import register_tortoise

from booking_engine import settings
from booking_engine.routers.booking import router as booking_router

TORTOISE_ORM = {
    "connections": {"default": settings.db_url},
    "apps": {
        "models": {
            "models": ["booking_engine.models"],
            "default_connection": "default",
        }
    },
    "use_tz": True,
    "timezone": "UTC",
}

app = FastAPI(title="bookings-ms")
app.include_router(booking_router)

register_tortoise(
    app,
    config=TORTOISE_ORM,
    generate_schemas=settings.GENERATE_SCHEMAS,
    add_exception_handlers=True,
)
