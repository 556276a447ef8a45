from .stripe_fees import StripeFeeResolver

__all__ = ["StripeFeeResolver"]
