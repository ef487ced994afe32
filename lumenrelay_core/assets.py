"""
Asset selection for payments.

The HTTP surface describes the asset with a flag and two optional fields.
Inside the service it is always one of two variants, resolved once:

    NativeAsset()                   the network's lumens
    IssuedAsset(code, issuer)       a credit asset, 1-12 alphanumeric chars

No network access happens here.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Union

from stellar_sdk import Asset, StrKey

from lumenrelay_core.errors import InvalidAssetError

MAX_ASSET_CODE_LENGTH = 12
_ASSET_CODE_RE = re.compile(r"^[a-zA-Z0-9]{1,12}$")


@dataclass(frozen=True)
class NativeAsset:
    """The ledger's native asset."""

    is_native = True

    def to_sdk(self) -> Asset:
        return Asset.native()

    def to_dict(self) -> dict[str, Any]:
        return {"type": "native"}

    def __str__(self) -> str:
        return "native"


@dataclass(frozen=True)
class IssuedAsset:
    """A credit asset identified by ``(code, issuer)``."""

    code: str
    issuer: str

    is_native = False

    def __post_init__(self) -> None:
        if not self.code or not self.issuer:
            raise InvalidAssetError(
                "Issued assets require both assetCode and assetIssuer",
                code=self.code, issuer=self.issuer,
            )
        if not _ASSET_CODE_RE.match(self.code):
            raise InvalidAssetError(
                f"assetCode must be 1-{MAX_ASSET_CODE_LENGTH} alphanumeric characters",
                code=self.code, issuer=self.issuer,
            )
        if not StrKey.is_valid_ed25519_public_key(self.issuer):
            raise InvalidAssetError(
                "assetIssuer is not a valid account id",
                code=self.code, issuer=self.issuer,
            )

    @property
    def asset_type(self) -> str:
        return "credit_alphanum4" if len(self.code) <= 4 else "credit_alphanum12"

    def to_sdk(self) -> Asset:
        return Asset(self.code, self.issuer)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.asset_type, "code": self.code, "issuer": self.issuer}

    def __str__(self) -> str:
        return f"{self.code}:{self.issuer}"


AssetSpec = Union[NativeAsset, IssuedAsset]


def resolve_asset(
    use_native: bool,
    code: str | None = None,
    issuer: str | None = None,
) -> AssetSpec:
    """Pick the asset variant for a payment.

    ``use_native`` wins over any code/issuer supplied.  Otherwise both fields
    must be present and well-formed.
    """
    if use_native:
        return NativeAsset()
    code = (code or "").strip()
    issuer = (issuer or "").strip()
    if not code or not issuer:
        raise InvalidAssetError(
            "Issued assets require both assetCode and assetIssuer",
            code=code or None, issuer=issuer or None,
        )
    return IssuedAsset(code, issuer)


def asset_from_fields(code: str | None, issuer: str | None) -> AssetSpec:
    """Resolve the asset of a ``/payment/send`` body.

    Native iff both fields are absent; one without the other is an error.
    """
    has_code = bool(code and str(code).strip())
    has_issuer = bool(issuer and str(issuer).strip())
    return resolve_asset(
        not has_code and not has_issuer,
        str(code) if has_code else None,
        str(issuer) if has_issuer else None,
    )
