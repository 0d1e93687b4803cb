import logging

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.security import OAuth2PasswordBearer

from vmplane.core import security
from vmplane.core.exceptions import AuthRequired, InvalidSpec, NotFound
from vmplane.models.customer import Customer
from vmplane.schemas import CustomerCreate, CustomerRead, LoginRequest, PasswordChange, Token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/customer", tags=["customer"])
# auto_error off: a missing token must render as AuthRequired like any other auth failure
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="customer/login", auto_error=False)


def get_catalog(request: Request):
    return request.app.state.catalog


def get_deny_list(request: Request):
    return request.app.state.deny_list


async def get_current_claims(token: str = Depends(oauth2_scheme),
                             deny_list: security.TokenDenyList = Depends(get_deny_list)) -> security.TokenClaims:
    if not token:
        raise AuthRequired("Missing bearer token")
    return security.decode_access_token(token, deny_list)


async def get_current_customer(claims: security.TokenClaims = Depends(get_current_claims),
                               catalog=Depends(get_catalog)) -> Customer:
    try:
        return catalog.get_customer(claims.userId)
    except NotFound:
        raise AuthRequired("Customer no longer exists")


def ensure_self(customer_id: int, customer: Customer):
    # Other customers' resources are reported as missing, not forbidden
    if customer_id != customer.id:
        raise NotFound("Customer not found")


@router.post("/create", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
async def create_customer(data: CustomerCreate, catalog=Depends(get_catalog)):
    return catalog.create_customer(data.username, data.email, security.get_password_hash(data.password))


@router.post("/login", response_model=Token)
async def login(data: LoginRequest, catalog=Depends(get_catalog)):
    customer = catalog.get_customer_by_username(data.username)
    if not customer or not security.verify_password(data.password, customer.password_hash):
        raise AuthRequired("Incorrect username or password")
    token = security.create_access_token(customer.id, customer.username, customer.email)
    logger.info(f"Customer {customer.username} logged in")
    return {"token": token}


@router.post("/logout")
async def logout(claims: security.TokenClaims = Depends(get_current_claims),
                 deny_list: security.TokenDenyList = Depends(get_deny_list)):
    deny_list.revoke(claims.jti, claims.exp)
    return {"message": "Logged out"}


@router.get("/profile", response_model=CustomerRead)
async def read_profile(customer: Customer = Depends(get_current_customer)):
    return customer


@router.put("/password")
async def change_password(data: PasswordChange, customer: Customer = Depends(get_current_customer),
                          catalog=Depends(get_catalog)):
    if not security.verify_password(data.current_password, customer.password_hash):
        raise InvalidSpec("Incorrect current password")
    catalog.update_password(customer.id, security.get_password_hash(data.new_password))
    return {"message": "Password updated successfully"}


@router.delete("/delete")
async def delete_customer(customer_id: int = Query(alias="customerId"),
                          customer: Customer = Depends(get_current_customer),
                          claims: security.TokenClaims = Depends(get_current_claims),
                          deny_list: security.TokenDenyList = Depends(get_deny_list),
                          catalog=Depends(get_catalog)):
    ensure_self(customer_id, customer)
    catalog.delete_customer(customer.id)
    deny_list.revoke(claims.jti, claims.exp)
    return {"message": "Customer deleted"}
