"""
User notification preference routes.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from weddingbell.app.api.deps import get_preference_store
from weddingbell.app.models.api.management_schemas import PreferencesResponse, PreferencesUpdateRequest
from weddingbell.app.services.preference_store import PreferenceStore

router = APIRouter()


def _response(preferences) -> Dict[str, Any]:
    return {"user_id": preferences.user_id, **preferences.to_dict()}


@router.get("/{user_id}", response_model=PreferencesResponse, summary="Get preferences")
async def get_preferences(
    user_id: str,
    store: PreferenceStore = Depends(get_preference_store)
) -> Dict[str, Any]:
    """Stored preferences, with defaults for anything the user never set."""
    return _response(await store.get(user_id))


@router.put("/{user_id}", response_model=PreferencesResponse, summary="Update preferences")
async def update_preferences(
    user_id: str,
    request: PreferencesUpdateRequest,
    store: PreferenceStore = Depends(get_preference_store)
) -> Dict[str, Any]:
    """Merge the given fields into the stored preferences and invalidate caches."""
    return _response(await store.update(user_id, request.to_updates()))
