import logging
import os
from datetime import datetime
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pymongo.database import Database
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import CurrentUser, get_current_admin, get_current_user
from catalog import CatalogAdmin, CatalogBrowser, CatalogQuery
from database import get_db
from errors import AppError, ValidationFailed
from images import UPLOAD_DIR, UPLOAD_URL, LocalImageStore, get_image_store
from orders import OrderLifecycle, OrderPlacement, OrderQueries
from schemas import AvailabilityUpdate, OrderStatus, StatusUpdate

APP_ENV = os.getenv("APP_ENV", "production")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Cake Shop API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(UPLOAD_URL, StaticFiles(directory=UPLOAD_DIR, check_dir=False), name="uploads")


def get_clock():
    return datetime.now


def ok(data: Any = None, message: Optional[str] = None) -> dict:
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


# --------------
# Error handling
# --------------

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in e["loc"] if p != "body"), "message": e["msg"]}
        for e in exc.errors()
    ]
    return JSONResponse(status_code=400, content=ValidationFailed(details=details).to_dict())


HTTP_KINDS = {401: "Unauthorized", 403: "ForbiddenError", 404: "NotFoundError", 405: "MethodNotAllowed"}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "error": {"kind": HTTP_KINDS.get(exc.status_code, "HTTPError")},
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = {"kind": "InternalError"}
    if APP_ENV == "development":
        error["details"] = str(exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error", "error": error},
    )


# ----------
# Root/Test
# ----------

@app.get("/")
def read_root():
    return {"name": "Cake Shop API", "status": "ok"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    info = {"backend": "running", "database": "disconnected"}
    try:
        db.list_collection_names()
        info["database"] = "connected"
    except Exception as e:
        info["error"] = str(e)[:80]
    return info


# -----
# Cakes
# -----

async def read_cake_payload(request: Request):
    """Form fields (multipart or urlencoded) or a JSON object, plus the uploaded image if any."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        image = form.get("image")
        fields = {k: v for k, v in form.items() if k != "image"}
        if not isinstance(image, UploadFile) or not image.filename:
            image = None
        return fields, image
    try:
        body = await request.json()
    except ValueError:
        raise ValidationFailed("Request body must be JSON or form data")
    if not isinstance(body, dict):
        raise ValidationFailed("Request body must be a JSON object")
    return body, None


@app.get("/cakes")
def list_cakes(request: Request, db: Database = Depends(get_db)):
    query = CatalogQuery.from_params(request.query_params)
    return ok(CatalogBrowser(db).browse(query))


@app.get("/cakes/admin/all")
def admin_list_cakes(request: Request, db: Database = Depends(get_db),
                     _: CurrentUser = Depends(get_current_admin)):
    query = CatalogQuery.from_params(request.query_params, admin=True)
    return ok(CatalogBrowser(db).browse(query, include_filters=False))


@app.get("/cakes/{cake_id}")
def get_cake(cake_id: str, db: Database = Depends(get_db)):
    return ok({"cake": CatalogBrowser(db).get(cake_id)})


@app.post("/cakes", status_code=201)
async def create_cake(request: Request, db: Database = Depends(get_db),
                      images: LocalImageStore = Depends(get_image_store),
                      _: CurrentUser = Depends(get_current_admin)):
    fields, image = await read_cake_payload(request)
    image_url = fields.pop("imageUrl", None)
    if image is not None:
        image_url = await images.save(image)
    try:
        cake = CatalogAdmin(db, images).create(fields, image_url)
    except AppError:
        if image is not None:
            images.discard(image_url)
        raise
    return ok({"cake": cake}, "Cake added successfully")


@app.put("/cakes/{cake_id}")
async def update_cake(cake_id: str, request: Request, db: Database = Depends(get_db),
                      images: LocalImageStore = Depends(get_image_store),
                      _: CurrentUser = Depends(get_current_admin)):
    fields, image = await read_cake_payload(request)
    image_url = fields.pop("imageUrl", None)
    if image is not None:
        image_url = await images.save(image)
    try:
        cake = CatalogAdmin(db, images).update(cake_id, fields, image_url)
    except AppError:
        if image is not None:
            images.discard(image_url)
        raise
    return ok({"cake": cake}, "Cake updated successfully")


@app.delete("/cakes/{cake_id}")
def delete_cake(cake_id: str, db: Database = Depends(get_db),
                images: LocalImageStore = Depends(get_image_store),
                _: CurrentUser = Depends(get_current_admin)):
    CatalogAdmin(db, images).delete(cake_id)
    return ok(message="Cake deleted successfully")


@app.patch("/cakes/{cake_id}/availability")
def toggle_availability(cake_id: str, payload: AvailabilityUpdate, db: Database = Depends(get_db),
                        _: CurrentUser = Depends(get_current_admin)):
    cake = CatalogAdmin(db).set_availability(cake_id, payload.is_available)
    state = "activated" if payload.is_available else "deactivated"
    return ok({"cake": cake}, f"Cake {state} successfully")


# ------
# Orders
# ------

@app.post("/orders", status_code=201)
def place_order(payload: Any = Body(...), db: Database = Depends(get_db),
                clock=Depends(get_clock), current: CurrentUser = Depends(get_current_user)):
    order = OrderPlacement(db, clock).place(current, payload)
    return ok({"order": order}, "Order placed successfully")


@app.get("/orders/my-orders")
def my_orders(request: Request, db: Database = Depends(get_db),
              current: CurrentUser = Depends(get_current_user)):
    return ok(OrderQueries(db).for_user(current, request.query_params))


@app.get("/orders/admin/all")
def admin_list_orders(request: Request, db: Database = Depends(get_db),
                      _: CurrentUser = Depends(get_current_admin)):
    return ok(OrderQueries(db).for_admin(request.query_params))


@app.get("/orders/{order_id}")
def get_order(order_id: str, db: Database = Depends(get_db),
              current: CurrentUser = Depends(get_current_user)):
    return ok({"order": OrderQueries(db).get(order_id, current)})


@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdate, db: Database = Depends(get_db),
                        _: CurrentUser = Depends(get_current_admin)):
    order = OrderLifecycle(db).transition(order_id, payload.status, payload.cancellation_reason)
    if order["status"] == OrderStatus.CANCELLED.value:
        message = f"Order cancelled successfully with reason: {order['cancellationReason']}"
    else:
        message = f"Order status updated to {order['status']}"
    return ok({"order": order}, message)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
