from tradeflow.extensions import db
from tradeflow.models import SellerProfile
from tradeflow.utils import as_id_set
import logging

logger = logging.getLogger(__name__)


def resolve_seller_ids(actor_id):
    """Map a caller to every identifier that can stand for the same seller.

    A seller may be referenced by its account id or by its seller profile
    id; authorization checks test membership in the returned set.
    """
    ids = as_id_set(actor_id)
    if not ids:
        return ids

    actor_id = next(iter(ids))
    profile = SellerProfile.query.filter_by(user_id=actor_id).first()
    if profile is None:
        profile = db.session.get(SellerProfile, actor_id)
    if profile is not None:
        ids.update({profile.id, profile.user_id})
    return ids


def is_seller_of(entity, seller_ids) -> bool:
    ids = as_id_set(seller_ids)
    if len(ids) == 1:
        # A bare id from the caller; widen it to its equivalents.
        ids = resolve_seller_ids(ids)
    return str(entity.seller_id) in ids


def is_buyer_of(entity, buyer_id) -> bool:
    return buyer_id is not None and str(entity.buyer_id) == str(buyer_id)
