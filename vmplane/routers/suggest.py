from typing import Dict, List

from fastapi import APIRouter, Depends, Request

from vmplane.models.customer import Customer
from vmplane.routers.customer import get_current_customer
from vmplane.schemas import SuggestionItem, SuggestionList

router = APIRouter(prefix="/suggest", tags=["suggest"])


def get_suggestions(request: Request):
    return request.app.state.suggestions


@router.get("/", response_model=Dict[str, List[SuggestionItem]])
async def all_suggestions(customer: Customer = Depends(get_current_customer),
                          suggestions=Depends(get_suggestions)):
    return await suggestions.collect_all()


@router.get("/{kind}", response_model=SuggestionList)
async def suggestions_of_kind(kind: str, customer: Customer = Depends(get_current_customer),
                              suggestions=Depends(get_suggestions)):
    return {"items": await suggestions.collect(kind)}
