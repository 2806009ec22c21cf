import logging
import os
from pathlib import Path
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from rentpay import checkout, reconciler, routes, settlement, sweep
from rentpay.database import Base, engine
from rentpay.exceptions import RentpayError

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Rental Payment Link Service")

app.include_router(routes.router)
app.include_router(checkout.router)
app.include_router(reconciler.router)
app.include_router(sweep.router)
app.include_router(settlement.router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(RentpayError)
async def rentpay_error_handler(request: Request, exc: RentpayError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "Cuerpo de la solicitud inválido.",
            "details": jsonable_errors(exc),
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Error interno del servidor.", "details": str(exc)},
    )


def jsonable_errors(exc):
    return [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
