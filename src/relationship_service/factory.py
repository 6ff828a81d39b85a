# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Factory for the relationship service.

Creates the SQLite store from StoreSettings, loads the mirror and starts the
expiry sweeper.
"""

import logging

from .config import RelationshipSettings
from .service import RelationshipService

logger = logging.getLogger(__name__)


async def create_relationship_service(config: RelationshipSettings | None = None) -> RelationshipService:
    """
    Create and start a RelationshipService.

    Returns:
        Started RelationshipService
    """
    from .config import settings

    config = config or settings

    logger.info(f"Creating relationship service (store={config.store.db_path})...")
    service = RelationshipService.from_settings(config)
    await service.start()
    logger.info("Relationship service started")

    return service
