from dataclasses import dataclass

ROLE_CUSTOMER = "CUSTOMER"
ROLE_ADMIN = "ADMIN"
ROLE_SUPPORT = "SUPPORT"
ROLE_DRIVER = "DRIVER"

KNOWN_ROLES = (ROLE_CUSTOMER, ROLE_ADMIN, ROLE_SUPPORT, ROLE_DRIVER)


@dataclass(frozen=True)
class Principal:
    """Verified caller identity, passed explicitly into every engine call."""
    user_id: str
    role: str = ROLE_CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def has_role(self, *roles: str) -> bool:
        return self.role in roles

    def owns(self, owner_id: str) -> bool:
        return str(owner_id) == self.user_id


# actor recorded for gateway-originated changes
GATEWAY_PRINCIPAL = Principal(user_id="razorpay", role="GATEWAY")
