import logging

import httpx

from rentpay import config
from rentpay.exceptions import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

LINK_PATH = "/online/link/v1"


def _headers():
    api_key = config.bold_api_key()
    if not api_key:
        logger.error("BOLD_API_KEY is not configured")
        raise ConfigurationError(
            "Configuración del servidor de pagos incompleta (Key Bold)."
        )
    return {
        "Content-Type": "application/json",
        "Authorization": f"x-api-key {api_key}",
    }


def _describe_errors(errors):
    if isinstance(errors, list):
        parts = []
        for e in errors:
            if isinstance(e, dict) and (e.get("message") or e.get("description")):
                parts.append(
                    f"{e.get('code') or 'ERR'}: {e.get('message') or e.get('description')}"
                )
            else:
                parts.append(str(e))
        return "; ".join(parts)
    if isinstance(errors, dict):
        text = errors.get("message") or errors.get("description")
        if text:
            return f"{errors.get('code') or 'ERR'}: {text}"
        return "Error no estructurado recibido de Bold."
    return str(errors)


def _embedded_errors(body):
    # Bold sometimes answers 200 with {"errors": [...]} or {"error": {...}}
    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        return errors
    return body.get("error") or None


def create_payment_link(amount: int, description: str, expiration_seconds: int):
    """Mint a Bold payment link; returns ``(url, payment_link_id)``."""
    headers = _headers()
    payload = {
        "amount_type": "CLOSE",
        "amount": {
            "currency": config.BOLD_CURRENCY,
            "total_amount": amount,
        },
        "description": description,
        "expiration_time": expiration_seconds,
        "return_url": config.BOLD_RETURN_URL,
    }
    if config.BOLD_IMAGE_URL:
        payload["image_url"] = config.BOLD_IMAGE_URL

    try:
        response = httpx.post(
            config.BOLD_API_URL + LINK_PATH,
            json=payload,
            headers=headers,
            timeout=config.BOLD_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as e:
        logger.error("Bold link creation failed: %s", e)
        raise UpstreamError("No se pudo contactar a Bold.", details=str(e))

    try:
        body = response.json()
    except ValueError:
        logger.error(
            "Unparsable Bold response on link creation",
            extra={"status_code": response.status_code, "body": response.text},
        )
        if not response.is_success:
            raise UpstreamError(
                f"Error del proveedor de pagos: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        raise UpstreamError("Respuesta inesperada del proveedor de pagos.")

    if not isinstance(body, dict):
        body = {}

    errors = _embedded_errors(body)
    if not response.is_success or errors:
        logger.error(
            "Bold rejected link creation",
            extra={"status_code": response.status_code, "errors": errors or body},
        )
        if errors:
            message = _describe_errors(errors)
        else:
            message = f"Error del proveedor: {response.status_code} {response.reason_phrase}"
        raise UpstreamError(
            message,
            details=errors or body,
            status_code=response.status_code if not response.is_success else 400,
        )

    data = body.get("payload") or {}
    url = data.get("url") if isinstance(data, dict) else None
    link_id = data.get("payment_link") if isinstance(data, dict) else None
    if not url or not link_id:
        logger.error("Bold link response without payload.url/payment_link: %s", body)
        raise UpstreamError(
            "Respuesta inválida del proveedor de pagos (formato inesperado)."
        )
    return url, link_id


def get_payment_link_status(link_id: str) -> str:
    """Return the raw ``status`` Bold reports for a payment link."""
    headers = _headers()
    try:
        response = httpx.get(
            f"{config.BOLD_API_URL}{LINK_PATH}/{link_id}",
            headers=headers,
            timeout=config.BOLD_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as e:
        logger.error("Bold status query failed for %s: %s", link_id, e)
        raise UpstreamError("No se pudo contactar a Bold.", details=str(e))
    if not response.is_success:
        logger.error(
            "Bold status query failed for %s", link_id,
            extra={"status_code": response.status_code, "body": response.text},
        )
        raise UpstreamError(
            f"Error al consultar el link de pago en Bold: {response.status_code}",
            details=response.text,
            status_code=response.status_code,
        )

    try:
        body = response.json()
    except ValueError:
        raise UpstreamError(
            "Respuesta inválida de la API de Bold.", details=response.text
        )

    status = body.get("status") if isinstance(body, dict) else None
    if not isinstance(status, str) or not status.strip():
        logger.error(
            "Bold returned an unusable status for %s", link_id,
            extra={"status": repr(status)},
        )
        raise UpstreamError(
            "Respuesta de Bold no contiene un campo 'status' válido.",
            details={"status": status} if status is not None else None,
        )
    return status.strip()
