from commission_builder.services.normalization.certificate_normalizer import (
    CertificateNormalizer,
    NormalizationResult,
    is_invalid_group,
)

__all__ = ["CertificateNormalizer", "NormalizationResult", "is_invalid_group"]
