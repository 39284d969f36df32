"""CRUD routes for the sample `users` resource."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response

from ..db.users import UserRepository
from .deps import get_repository
from .schemas import CreateUserRequest, SafeUser, UpdateUserRequest

router = APIRouter(prefix="/users", tags=["users"])

NOT_FOUND = "User not found"


@router.get("", response_model=List[SafeUser])
def list_users(repository: UserRepository = Depends(get_repository)):
    return repository.list_users()


@router.get("/{user_id}", response_model=SafeUser)
def get_user(user_id: int, repository: UserRepository = Depends(get_repository)):
    user = repository.get_user_by_id(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=NOT_FOUND)
    return user


@router.post("", response_model=SafeUser, status_code=201)
def create_user(
    body: CreateUserRequest, repository: UserRepository = Depends(get_repository)
):
    return repository.create_user(body.to_payload())


@router.put("/{user_id}", response_model=SafeUser)
def update_user(
    user_id: int,
    body: UpdateUserRequest,
    repository: UserRepository = Depends(get_repository),
):
    user = repository.update_user(user_id, body.to_payload())
    if user is None:
        raise HTTPException(status_code=404, detail=NOT_FOUND)
    return user


@router.delete("/{user_id}", status_code=204)
def delete_user(user_id: int, repository: UserRepository = Depends(get_repository)):
    if not repository.delete_user(user_id):
        raise HTTPException(status_code=404, detail=NOT_FOUND)
    return Response(status_code=204)
