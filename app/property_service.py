import logging
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

import models_sqlalchemy as models
import models_pydantic as schemas
from app_errors import ForbiddenException, InfrastructureException, NotFoundException, ValidationException
from auth_security import TokenClaims
from cache_layer import CacheService
from image_pipeline import ImagePipeline

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class PropertyService:
    """Listing CRUD and filtered search."""

    def __init__(self, db: Session, cache: CacheService, images: Optional[ImagePipeline] = None):
        self.db = db
        self.cache = cache
        self.images = images

    def list_properties(
        self,
        city: Optional[str] = None,
        type: Optional[str] = None,
        furnished: Optional[bool] = None,
        price_min: Optional[float] = None,
        price_max: Optional[float] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[models.Property], int]:
        query = self.db.query(models.Property)
        if city:
            query = query.filter(models.Property.city.ilike(f"%{city}%"))
        if type:
            query = query.filter(models.Property.type == type)
        if furnished is not None:
            query = query.filter(models.Property.furnished == furnished)
        if price_min is not None:
            query = query.filter(models.Property.price_per_night >= price_min)
        if price_max is not None:
            query = query.filter(models.Property.price_per_night <= price_max)

        total = query.count()
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        offset = (max(page, 1) - 1) * limit
        properties = (
            query.order_by(models.Property.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return properties, total

    def get_property(self, property_id: str) -> models.Property:
        prop = self.db.query(models.Property).filter(models.Property.id == property_id).first()
        if not prop:
            raise NotFoundException("Property not found")
        return prop

    def list_by_owner(self, owner_id: str) -> List[models.Property]:
        return (
            self.db.query(models.Property)
            .filter(models.Property.owner_id == owner_id)
            .order_by(models.Property.created_at.desc())
            .all()
        )

    @staticmethod
    def ensure_can_manage(prop: models.Property, actor: TokenClaims) -> None:
        if actor.role != "admin" and prop.owner_id != actor.user_id:
            raise ForbiddenException("You are not allowed to manage this property")

    def create_property(
        self, payload: schemas.PropertyCreate, owner_id: str, photos: Sequence[bytes] = ()
    ) -> models.Property:
        owner = self.db.query(models.User).filter(models.User.id == owner_id).first()
        if not owner or owner.role not in ("owner", "admin"):
            raise ValidationException("Properties can only be owned by an owner or admin account")

        data = payload.model_dump()
        data["amenities"] = schemas.list_to_comma_string(data.get("amenities"))
        prop = models.Property(owner_id=owner_id, image_urls=[], **data)
        self.db.add(prop)
        self.db.commit()
        self.db.refresh(prop)

        if photos:
            urls = []
            try:
                for photo in photos:
                    variants = self.images.upload_and_optimize(photo, prop.id)
                    urls.extend([variants["thumbnail"], variants["medium"], variants["large"]])
                prop.image_urls = urls
                self.db.commit()
            except Exception:
                # no partially illustrated listing is left behind
                self.db.rollback()
                self.db.delete(prop)
                self.db.commit()
                self._discard_images(urls)
                raise

        self.cache.invalidate_property_cache()
        logger.info("Property %s created by %s with %d image(s)", prop.id, owner_id, len(photos))
        return prop

    def _discard_images(self, urls: List[str]) -> None:
        if not urls:
            return
        try:
            self.images.delete_images(urls)
        except InfrastructureException as e:
            logger.warning("Could not remove %d orphaned image(s): %s", len(urls), e)

    def update_property(
        self, property_id: str, payload: schemas.PropertyUpdate, actor: TokenClaims
    ) -> models.Property:
        prop = self.get_property(property_id)
        self.ensure_can_manage(prop, actor)
        for field, value in payload.model_dump(exclude_unset=True).items():
            if field == "amenities" and value is not None:
                setattr(prop, field, schemas.list_to_comma_string(value))
            elif value is not None:
                setattr(prop, field, value)
        self.db.commit()
        self.db.refresh(prop)
        self.cache.invalidate_property_cache()
        return prop

    def delete_property(self, property_id: str, actor: TokenClaims) -> None:
        prop = self.get_property(property_id)
        self.ensure_can_manage(prop, actor)
        if prop.image_urls and self.images:
            self.images.delete_images(prop.image_urls)
        self.db.delete(prop)
        self.db.commit()
        self.cache.invalidate_property_cache()
        logger.info("Property %s deleted by %s", property_id, actor.user_id)
