from __future__ import annotations

"""backend/querygate/services/directory.py

Read-only lookups the approval state machine consumes: users and the pods
they manage, and target database instances (with credentials decrypted).
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from querygate import models
from querygate.services.credentials import CredentialCipher, get_cipher
from querygate.services.execution.dispatcher import InstanceDescriptor


class UserDirectory:
    def __init__(self, db: Session) -> None:
        self.db = db

    def find_by_id(self, user_id: str) -> Optional[models.User]:
        return self.db.get(models.User, user_id)

    def get_user_pods(self, user_id: str) -> List[models.Pod]:
        """Pods managed by ``user_id``."""
        return (
            self.db.query(models.Pod)
            .filter(models.Pod.manager_id == user_id)
            .order_by(models.Pod.name)
            .all()
        )

    def get_managed_pod_ids(self, user_id: str) -> List[str]:
        return [pod.id for pod in self.get_user_pods(user_id)]

    def is_manager_of_pod(self, user_id: str, pod_id: Optional[str]) -> bool:
        if not pod_id:
            return False
        return pod_id in self.get_managed_pod_ids(user_id)

    def find_pod(self, pod_id: str) -> Optional[models.Pod]:
        return self.db.get(models.Pod, pod_id)


class InstanceDirectory:
    def __init__(self, db: Session, cipher: CredentialCipher | None = None) -> None:
        self.db = db
        self.cipher = cipher or get_cipher()

    def find_model(self, instance_id: str) -> Optional[models.DbInstance]:
        return self.db.get(models.DbInstance, instance_id)

    def find_by_id(self, instance_id: str) -> Optional[InstanceDescriptor]:
        instance = self.find_model(instance_id)
        if instance is None:
            return None
        return InstanceDescriptor(
            id=instance.id,
            name=instance.name,
            type=instance.type,
            host=instance.host,
            port=instance.port,
            username=self.cipher.decrypt(instance.username),
            password=self.cipher.decrypt(instance.password),
            mongo_uri=self.cipher.decrypt(instance.mongo_uri),
        )
