import httpx

from telecare.core.errors import TransportError, error_from_payload
from telecare.modules.alerts.schemas import Alert


async def fetch_active_alerts(
    base_url: str,
    token: str,
    patient_id: str | None = None,
    limit: int | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[Alert]:
    """Pull active alerts over HTTP, for consumers that reconcile without a socket."""
    params: dict[str, str | int] = {}
    if patient_id is not None:
        params["patient_id"] = patient_id
    if limit is not None:
        params["limit"] = limit
    headers = {"Authorization": f"Bearer {token}"}
    url = f"{base_url.rstrip('/')}/api/v1/alerts/active"

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=10.0)
    try:
        response = await http.get(url, params=params, headers=headers)
    except httpx.HTTPError as exc:
        raise TransportError("alert list request failed", url=url, error=str(exc)) from exc
    finally:
        if owns_client:
            await http.aclose()

    if response.status_code >= 400:
        try:
            payload = response.json().get("error") or {}
        except ValueError:
            payload = {}
        if not payload:
            raise TransportError("alert list request failed", url=url, status_code=response.status_code)
        raise error_from_payload(payload)
    return [Alert.model_validate(item) for item in response.json()]
