from dataclasses import dataclass, fields

DEFAULT_TIMEOUT = 20


@dataclass(frozen=True)
class GatewayConfig:
    """Credential bundle for one gateway, built once from settings.PAYMENT_GATEWAYS."""

    name: str
    enabled: bool = True
    mode: str = "sandbox"
    currency: str = "USD"
    api_url: str = ""
    timeout: int = DEFAULT_TIMEOUT
    api_key: str = ""
    secret_key: str = ""
    public_key: str = ""
    client_id: str = ""
    client_secret: str = ""
    checksum_secret: str = ""
    webhook_secret: str = ""
    webhook_id: str = ""
    merchant_id: str = ""

    @classmethod
    def from_dict(cls, name, data, timeout=None):
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in (data or {}).items() if key in known}
        values["name"] = name
        for key, value in list(values.items()):
            if value is None:
                values.pop(key)
        if timeout is not None and "timeout" not in values:
            values["timeout"] = timeout
        return cls(**values)

    def has(self, *field_names):
        return all(getattr(self, field_name, "") for field_name in field_names)

    @property
    def is_live(self):
        return self.mode in ("live", "production")
