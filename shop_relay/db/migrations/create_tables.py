from shop_relay.models.base import Base
from shop_relay.models.shop_linkage import ShopLinkage
from shop_relay.models.verification_code import VerificationCode
from shop_relay.models.verification_lockout import VerificationLockout
from shop_relay.db.session import engine


def create_tables(bind=engine):
    Base.metadata.create_all(bind=bind)


if __name__ == "__main__":
    create_tables()
    print("Tables created.")
