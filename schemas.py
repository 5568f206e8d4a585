"""
MarketRelay API Schemas
Request and response models. JSON keys are camelCase for the bot front end.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from database import Listing


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SearchRequest(RequestModel):
    query: Optional[str] = None


class CategoryRequest(RequestModel):
    category: Optional[str] = None


class LocationRequest(RequestModel):
    city: str = ""
    radius: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class PriceFilterRequest(RequestModel):
    min_price: Optional[int] = Field(None, alias="minPrice")
    max_price: Optional[int] = Field(None, alias="maxPrice")


class YearFilterRequest(RequestModel):
    min_year: Optional[int] = Field(None, alias="minYear")
    max_year: Optional[int] = Field(None, alias="maxYear")


class AgeFilterRequest(RequestModel):
    max_age_minutes: Optional[int] = Field(None, alias="maxAgeMinutes")


class ClearListingCacheRequest(RequestModel):
    sessions: bool = False


class ListingOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    title: str
    price: str
    location: str = ""
    image_url: Optional[str] = Field(None, alias="imageUrl")
    item_url: str = Field(..., alias="itemUrl")
    saved_image_path: Optional[str] = Field(None, alias="savedImagePath")
    age_minutes: Optional[int] = Field(None, alias="ageMinutes")
    model_name: Optional[str] = Field(None, alias="modelName")

    @classmethod
    def from_listing(cls, listing: Listing) -> "ListingOut":
        return cls(
            title=listing.title,
            price=listing.price,
            location=listing.location,
            image_url=listing.image_url,
            item_url=listing.url,
            saved_image_path=listing.saved_image_path,
            age_minutes=listing.age_minutes,
            model_name=listing.model_name,
        )


class ListingsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    items: List[ListingOut]
    filtered_count: int = Field(0, alias="filteredCount")
    duplicates_removed: int = Field(0, alias="duplicatesRemoved")
    age_filtered_count: int = Field(0, alias="ageFilteredCount")
    image_stats: Dict[str, int] = Field(default_factory=dict, alias="imageStats")
    recovered: bool = False
    attempts: int = 1
