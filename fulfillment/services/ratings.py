"""
Rating Aggregator

Keeps Product.average_rating and Product.rating_count equal to the mean
and count of the product's reviews. The aggregate is updated in the same
transaction as the review write, with the product row locked (and its
version column checked) so concurrent reviewers of one product serialize.

Ratings are integers, so the rating sum is recovered exactly as
round(average * count). Updating from that sum instead of chaining float
averages means a create followed by a delete restores the previous
average bit for bit.
"""

from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config.logging import get_logger
from fulfillment.database.models import Customer, Product, Review
from fulfillment.errors import (
    DuplicateReviewError,
    InvalidReviewError,
    UnknownCustomerError,
    UnknownProductError,
    UnknownReviewError,
)

logger = get_logger(__name__)

MIN_RATING = 1
MAX_RATING = 5
MIN_BODY_LENGTH = 5

# Average reported for a product with no reviews
NO_RATING = 0.0

Aggregate = Tuple[float, int]


def _rating_sum(average: float, count: int) -> int:
    return int(round(average * count))


def after_create(average: float, count: int, rating: int) -> Aggregate:
    new_count = count + 1
    return (_rating_sum(average, count) + rating) / new_count, new_count


def after_update(average: float, count: int, old_rating: int, new_rating: int) -> Aggregate:
    if count == 0:
        raise ValueError("Cannot update a rating on a product with no reviews")
    return (_rating_sum(average, count) - old_rating + new_rating) / count, count


def after_delete(average: float, count: int, rating: int) -> Aggregate:
    new_count = count - 1
    if new_count <= 0:
        return NO_RATING, 0
    return (_rating_sum(average, count) - rating) / new_count, new_count


def validate_rating(rating) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
        raise InvalidReviewError(f"Rating must be an integer between {MIN_RATING} and {MAX_RATING}.")
    return rating


def validate_body(body: Optional[str]) -> str:
    text = (body or "").strip()
    if len(text) < MIN_BODY_LENGTH:
        raise InvalidReviewError(f"Review text must be at least {MIN_BODY_LENGTH} characters.")
    return text


class RatingAggregator:
    """Applies review writes to product rating aggregates"""

    async def lock_product(self, session: AsyncSession, product_id: str) -> Product:
        product = await session.scalar(
            select(Product)
            .where(Product.id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if product is None:
            raise UnknownProductError(product_id)
        return product

    def _apply(self, product: Product, aggregate: Aggregate, event: str) -> None:
        average, count = aggregate
        previous = (product.average_rating, product.rating_count)
        product.average_rating = average
        product.rating_count = count
        logger.info(
            "Rating aggregate updated",
            product_id=product.id,
            trigger=event,
            average_rating=average,
            rating_count=count,
            previous_average=previous[0],
            previous_count=previous[1],
        )

    def on_create(self, product: Product, rating: int) -> None:
        self._apply(product, after_create(product.average_rating, product.rating_count, rating), "create")

    def on_update(self, product: Product, old_rating: int, new_rating: int) -> None:
        self._apply(
            product,
            after_update(product.average_rating, product.rating_count, old_rating, new_rating),
            "update",
        )

    def on_delete(self, product: Product, rating: int) -> None:
        self._apply(product, after_delete(product.average_rating, product.rating_count, rating), "delete")

    async def reconcile(self, session: AsyncSession, product_id: str) -> Product:
        """Recompute the aggregate from review rows (repairs drift)."""
        product = await self.lock_product(session, product_id)
        row = (
            await session.execute(
                select(func.count(Review.id), func.coalesce(func.sum(Review.rating), 0))
                .where(Review.product_id == product_id)
            )
        ).one()
        count, total = int(row[0]), int(row[1])
        self._apply(product, (total / count if count else NO_RATING, count), "reconcile")
        await session.flush()
        return product


class ReviewService:
    """
    Review writes with their aggregate updates.

    Example:
        async with database.transaction() as session:
            review = await reviews.create_review(session, product_id, customer_id, 4, "Great fit")
    """

    def __init__(self, aggregator: Optional[RatingAggregator] = None):
        self.aggregator = aggregator or RatingAggregator()

    async def create_review(
        self,
        session: AsyncSession,
        product_id: str,
        customer_id: str,
        rating: int,
        body: str,
    ) -> Review:
        """
        Raises:
            InvalidReviewError: Bad rating or body
            UnknownProductError / UnknownCustomerError
            DuplicateReviewError: Customer already reviewed this product
        """
        rating = validate_rating(rating)
        body = validate_body(body)

        product = await self.aggregator.lock_product(session, product_id)
        if await session.get(Customer, customer_id) is None:
            raise UnknownCustomerError(customer_id)

        existing = await session.scalar(
            select(Review.id).where(Review.product_id == product_id, Review.customer_id == customer_id)
        )
        if existing is not None:
            raise DuplicateReviewError(product_id, customer_id)

        review = Review(product_id=product_id, customer_id=customer_id, rating=rating, body=body)
        session.add(review)
        try:
            await session.flush()
        except IntegrityError as e:
            raise DuplicateReviewError(product_id, customer_id) from e

        self.aggregator.on_create(product, rating)
        await session.flush()
        return review

    async def update_review(
        self,
        session: AsyncSession,
        review_id: str,
        rating: Optional[int] = None,
        body: Optional[str] = None,
    ) -> Review:
        review = await session.get(Review, review_id)
        if review is None:
            raise UnknownReviewError(review_id)

        if rating is not None:
            rating = validate_rating(rating)
        if body is not None:
            body = validate_body(body)

        if rating is not None:
            product = await self.aggregator.lock_product(session, review.product_id)
            await session.refresh(review)
            if rating != review.rating:
                self.aggregator.on_update(product, review.rating, rating)
                review.rating = rating

        if body is not None:
            review.body = body

        await session.flush()
        return review

    async def delete_review(self, session: AsyncSession, review_id: str) -> Product:
        """Delete a review and return the product with its new aggregate"""
        review = await session.get(Review, review_id)
        if review is None:
            raise UnknownReviewError(review_id)

        product = await self.aggregator.lock_product(session, review.product_id)
        await session.refresh(review)
        await session.delete(review)
        self.aggregator.on_delete(product, review.rating)
        await session.flush()
        return product

    async def list_reviews(self, session: AsyncSession, product_id: str) -> List[Review]:
        """Reviews for a product, newest first"""
        result = await session.execute(
            select(Review)
            .where(Review.product_id == product_id)
            .order_by(Review.created_at.desc(), Review.id)
        )
        return list(result.scalars())
