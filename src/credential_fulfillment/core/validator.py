"""
Credential batch parsing and validation.

Turns a vendor upload (a list of mappings or a CSV document) into tagged
credential records. Header spellings are resolved through an explicit alias
table, each service type has one schema object, and every row is validated
independently so one bad row never blocks its siblings.
"""

import csv
import io
import re
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from credential_fulfillment.core.models import (
    AccountShareRecord,
    CredentialRecord,
    EmailInviteRecord,
    LicenseKeyRecord,
    ParseResult,
    ProfileSpec,
    RowError,
    ServiceType,
    UploadMode,
)
from credential_fulfillment.utils.exceptions import ValidationError
from credential_fulfillment.utils.logger import get_logger


logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PROFILE_FIELD_PATTERN = re.compile(r"^profile(\d+)(name|pin)$")
FALSE_VALUES = {"false", "0", "no", "n", "off"}

# Canonical field -> accepted header spellings, after normalize_header()
FIELD_ALIASES: Dict[ServiceType, Dict[str, Tuple[str, ...]]] = {
    ServiceType.ACCOUNT_SHARE: {
        "account_email": ("accountemail", "email", "accountlogin", "login", "username"),
        "account_password": ("accountpassword", "password", "pass"),
        "profiles": ("profiles",),
    },
    ServiceType.EMAIL_INVITE: {
        "email": ("email", "emailaddress", "recipientemail", "inviteemail"),
        "available": ("available", "isavailable"),
    },
    ServiceType.LICENSE_KEY: {
        "key": ("key", "licensekey", "license", "productkey", "serialkey"),
    },
}

PROFILE_NAME_ALIASES = ("name", "profilename")
PROFILE_PIN_ALIASES = ("pin", "profilepin")


def normalize_header(header: Any) -> str:
    """Case-fold a header and drop spaces, underscores, hyphens and any BOM."""
    text = str(header or "").replace("\ufeff", "")
    return re.sub(r"[\s_\-]+", "", text).lower()


def _clean(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def _is_blank_row(row: Mapping[str, Any]) -> bool:
    for value in row.values():
        if isinstance(value, (list, tuple, dict)):
            if value:
                return False
        elif _clean(value):
            return False
    return True


class _RowView:
    """Alias-aware read access to one raw row."""
    
    def __init__(self, row: Mapping[str, Any], aliases: Dict[str, Tuple[str, ...]]):
        self.raw = row
        self._normalized = {normalize_header(key): value for key, value in row.items() if key is not None}
        self._aliases = aliases
    
    def get(self, canonical: str) -> Any:
        for alias in self._aliases.get(canonical, ()):
            value = self._normalized.get(alias)
            if value is not None and (not isinstance(value, str) or value.strip()):
                return value
        return None
    
    def text(self, canonical: str) -> str:
        return _clean(self.get(canonical))
    
    def profile_columns(self) -> Dict[int, Dict[str, str]]:
        columns: Dict[int, Dict[str, str]] = {}
        for key, value in self._normalized.items():
            match = PROFILE_FIELD_PATTERN.match(key)
            if match:
                columns.setdefault(int(match.group(1)), {})[match.group(2)] = _clean(value)
        return columns


class AccountShareSchema:
    """Rules for shared accounts: credentials plus at least one named profile."""
    
    service_type = ServiceType.ACCOUNT_SHARE
    
    def __init__(self, pin_required: bool, provider: str):
        self.pin_required = pin_required
        self.provider = provider
    
    def build(self, row: _RowView) -> AccountShareRecord:
        account_email = row.text("account_email")
        if not account_email:
            raise ValidationError("Account email is required", field="account_email")
        
        account_password = row.text("account_password")
        if not account_password:
            raise ValidationError("Account password is required", field="account_password")
        
        profiles = self._profiles(row)
        if not profiles:
            raise ValidationError("At least one profile is required", field="profiles")
        
        for profile in profiles:
            if self.pin_required and not profile.pin:
                raise ValidationError(
                    f"Profile {profile.name} missing PIN (required for {self.provider})",
                    field="pin",
                    value=profile.name,
                )
        
        return AccountShareRecord(
            account_email=account_email,
            account_password=account_password,
            profiles=tuple(profiles),
        )
    
    def _profiles(self, row: _RowView) -> List[ProfileSpec]:
        nested = row.get("profiles")
        if nested is not None:
            return self._nested_profiles(nested)
        
        profiles = []
        for index, columns in sorted(row.profile_columns().items()):
            name = columns.get("name", "")
            pin = columns.get("pin", "")
            if not name and not pin:
                continue
            if not name:
                raise ValidationError(
                    f"Profile {index} is missing a name",
                    field=f"profile{index}Name",
                )
            profiles.append(ProfileSpec(name=name, pin=pin or None))
        return profiles
    
    @staticmethod
    def _nested_profiles(nested: Any) -> List[ProfileSpec]:
        if not isinstance(nested, (list, tuple)):
            raise ValidationError("Profiles must be a list", field="profiles", expected_type="list")
        
        profiles = []
        for position, item in enumerate(nested, start=1):
            if not isinstance(item, Mapping):
                raise ValidationError(
                    f"Profile {position} must be an object",
                    field="profiles",
                    expected_type="object",
                )
            view = _RowView(item, {"name": PROFILE_NAME_ALIASES, "pin": PROFILE_PIN_ALIASES})
            name = view.text("name")
            if not name:
                raise ValidationError(f"Profile {position} is missing a name", field="profiles")
            profiles.append(ProfileSpec(name=name, pin=view.text("pin") or None))
        return profiles


class EmailInviteSchema:
    """Rules for invitation slots: a recipient address that looks like one."""
    
    service_type = ServiceType.EMAIL_INVITE
    
    def build(self, row: _RowView) -> EmailInviteRecord:
        email = row.text("email")
        if not email:
            raise ValidationError("Email is required", field="email")
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email address", field="email", value=email)
        
        available = row.get("available")
        if isinstance(available, bool):
            is_available = available
        elif available is None:
            is_available = True
        else:
            is_available = _clean(available).lower() not in FALSE_VALUES
        
        return EmailInviteRecord(email=email, available=is_available)


class LicenseKeySchema:
    """Rules for license keys: a non-empty key string."""
    
    service_type = ServiceType.LICENSE_KEY
    
    def build(self, row: _RowView) -> LicenseKeyRecord:
        key = row.text("key")
        if not key:
            raise ValidationError("License key is required", field="key")
        return LicenseKeyRecord(key=key)


class CredentialBatchParser:
    """
    Parses vendor credential uploads into tagged records.
    
    Usage:
        parser = CredentialBatchParser(pin_required_providers={"netflix"})
        result = parser.parse(csv_text, ServiceType.ACCOUNT_SHARE, "netflix", UploadMode.CSV)
        result.records  # valid AccountShareRecord objects
        result.errors   # RowError per rejected row
    """
    
    def __init__(self, pin_required_providers: Optional[Iterable[str]] = None,
                 max_rows: Optional[int] = None):
        if pin_required_providers is None:
            pin_required_providers = {"netflix"}
        self.pin_required_providers: Set[str] = {p.lower() for p in pin_required_providers}
        self.max_rows = max_rows
    
    def parse(self, raw_input: Any, service_type: Any, provider: Any, mode: Any) -> ParseResult:
        """
        Parse an upload.
        
        Args:
            raw_input: List of mappings (manual) or CSV text/bytes/stream (csv)
            service_type: ServiceType of the product
            provider: Provider tag of the product
            mode: UploadMode
            
        Returns:
            ParseResult with valid records and per-row errors
            
        Raises:
            ValidationError: For operation-level problems (unknown mode,
                non-loadable service type, malformed input, too many rows)
        """
        service_type = self._coerce(ServiceType, service_type, "service_type")
        mode = self._coerce(UploadMode, mode, "mode")
        provider_tag = _clean(getattr(provider, "value", provider)).lower()
        
        schema = self._schema_for(service_type, provider_tag)
        aliases = FIELD_ALIASES[service_type]
        
        if mode == UploadMode.MANUAL:
            rows = self._manual_rows(raw_input)
        else:
            rows = self._csv_rows(raw_input)
        
        result = ParseResult()
        seen = 0
        for row_number, row in rows:
            if row is None or (isinstance(row, Mapping) and _is_blank_row(row)):
                continue
            seen += 1
            if self.max_rows and seen > self.max_rows:
                raise ValidationError(
                    f"Upload exceeds the maximum of {self.max_rows} rows",
                    field="credentials",
                    value=seen,
                )
            
            if not isinstance(row, Mapping):
                result.errors.append(RowError(
                    row_number=row_number,
                    message=f"Credential {row_number} must be an object",
                    row={"_value": row},
                    field="credentials",
                ))
                continue
            
            try:
                result.records.append(schema.build(_RowView(row, aliases)))
            except ValidationError as e:
                result.errors.append(RowError(
                    row_number=row_number,
                    message=e.message,
                    row=_display_row(row),
                    field=e.field,
                ))
        
        if seen == 0:
            result.errors.append(RowError(row_number=0, message="No credential rows found"))
        
        logger.info(
            f"Parsed {service_type.value} upload ({mode.value}): "
            f"{len(result.records)} valid, {len(result.errors)} rejected"
        )
        return result
    
    def _schema_for(self, service_type: ServiceType, provider: str):
        if service_type == ServiceType.ACCOUNT_SHARE:
            return AccountShareSchema(
                pin_required=provider in self.pin_required_providers,
                provider=provider,
            )
        if service_type == ServiceType.EMAIL_INVITE:
            return EmailInviteSchema()
        if service_type == ServiceType.LICENSE_KEY:
            return LicenseKeySchema()
        raise ValidationError(
            f"Credentials cannot be uploaded for service type '{service_type.value}'",
            field="service_type",
            value=service_type.value,
        )
    
    @staticmethod
    def _coerce(enum_cls, value: Any, field_name: str):
        try:
            return enum_cls(value)
        except ValueError:
            raise ValidationError(
                f"Unknown {field_name}: {value}",
                field=field_name,
                value=value,
                expected_type=enum_cls.__name__,
            )
    
    @staticmethod
    def _manual_rows(raw_input: Any) -> Iterator[Tuple[int, Any]]:
        if not isinstance(raw_input, (list, tuple)):
            raise ValidationError(
                "Manual uploads must be a list of credential objects",
                field="credentials",
                expected_type="list",
            )
        
        return enumerate(raw_input, start=1)
    
    @staticmethod
    def _csv_rows(raw_input: Any) -> Iterator[Tuple[int, Mapping[str, Any]]]:
        if isinstance(raw_input, (bytes, bytearray)):
            try:
                stream = io.StringIO(bytes(raw_input).decode("utf-8-sig"))
            except UnicodeDecodeError as e:
                raise ValidationError("CSV must be UTF-8 encoded", field="csv") from e
        elif isinstance(raw_input, str):
            stream = io.StringIO(raw_input)
        elif isinstance(raw_input, (io.RawIOBase, io.BufferedIOBase)):
            stream = io.TextIOWrapper(raw_input, encoding="utf-8-sig")
        elif hasattr(raw_input, "read"):
            stream = raw_input
        else:
            raise ValidationError("CSV upload must be text, bytes or a stream", field="csv")
        
        def generate():
            reader = csv.DictReader(stream)
            try:
                for row in reader:
                    yield reader.line_num, row
            except (csv.Error, UnicodeDecodeError) as e:
                raise ValidationError(f"Malformed CSV: {e}", field="csv") from e
        
        return generate()


def _display_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of a raw row safe to echo back; extra CSV cells land under None."""
    return {
        (key if key is not None else "_extra"): value
        for key, value in row.items()
    }
