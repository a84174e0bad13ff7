# /flowbot/services/project_service.py

import logging
from typing import Any, Dict, Optional, Protocol

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import ValidationError

from flowbot.config.settings import settings
from flowbot.models.project import Project

# Read-only access to project documents (credentials and flow graph) owned by
# the account service. Lookup failures are logged and reported as "no project".

logger = logging.getLogger(__name__)

PROJECT_PROJECTION = {
    "name": 1,
    "whatsappPhoneNumberId": 1,
    "whatsappAccessToken": 1,
    "isActive": 1,
    "fileTree": 1,
}


class ProjectSource(Protocol):
    async def get_project(self, project_id: str) -> Optional[Project]: ...

    async def get_project_by_phone_number_id(self, phone_number_id: str) -> Optional[Project]: ...


class ProjectRepository:
    def __init__(self, mongo_uri: str, collection_name: str):
        self.client = AsyncIOMotorClient(mongo_uri, serverSelectionTimeoutMS=5000, connectTimeoutMS=10000)
        self.db = self.client.get_default_database()
        self.collection = self.db[collection_name]

    @staticmethod
    def _id_query(project_id: str) -> Dict[str, Any]:
        return {"_id": ObjectId(project_id) if ObjectId.is_valid(project_id) else project_id}

    @staticmethod
    def _to_project(doc: Optional[Dict[str, Any]]) -> Optional[Project]:
        if not doc:
            return None
        try:
            return Project.model_validate(doc)
        except ValidationError as e:
            logger.error(f"Project {doc.get('_id')} has an unreadable flow definition: {e}")
            return None

    async def get_project(self, project_id: str) -> Optional[Project]:
        try:
            doc = await self.collection.find_one(self._id_query(project_id), PROJECT_PROJECTION)
        except Exception as e:
            logger.error(f"Error fetching project {project_id}: {e}")
            return None
        return self._to_project(doc)

    async def get_project_by_phone_number_id(self, phone_number_id: str) -> Optional[Project]:
        try:
            doc = await self.collection.find_one(
                {"whatsappPhoneNumberId": phone_number_id, "isActive": True}, PROJECT_PROJECTION
            )
        except Exception as e:
            logger.error(f"Error fetching project for phone_number_id {phone_number_id}: {e}")
            return None
        return self._to_project(doc)

    async def create_indexes(self):
        try:
            await self.collection.create_index("whatsappPhoneNumberId")
        except Exception as e:
            logger.warning(f"Could not create project indexes: {e}")

    def close(self):
        self.client.close()


project_repository = ProjectRepository(settings.mongo_uri, settings.mongo_projects_collection)
