# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""DCC Validation Service configuration.

Normative constants are fixed by the DCC format. Configurable defaults may
be overridden via environment variables.
"""

import os

# =============================================================================
# NORMATIVE CONSTANTS (fixed by the DCC format)
# =============================================================================

HC1_PREFIX: str = "HC1:"
PCR_TEST_TYPE: str = "LP6464-4"
RAPID_TEST_TYPE: str = "LP217198-3"
RULE_DESCRIPTION_LANGUAGE: str = "en"

# =============================================================================
# VALIDATION
# =============================================================================

DCC_HASH_ALGORITHM: str = os.getenv("DCC_HASH_ALGORITHM", "sha256")

# =============================================================================
# GATEWAY DOWNLOADS
# =============================================================================

RULES_URL: str = os.getenv("DCC_RULES_URL", "")
VALUE_SETS_URL: str = os.getenv("DCC_VALUE_SETS_URL", "")
SIGNER_CERTIFICATES_URL: str = os.getenv("DCC_SIGNER_CERTIFICATES_URL", "")

BUSINESS_RULES_DOWNLOAD_INTERVAL: float = float(os.getenv("DCC_BUSINESS_RULES_DOWNLOAD_INTERVAL", "3600"))
BUSINESS_RULES_LOCK_LIMIT: float = float(os.getenv("DCC_BUSINESS_RULES_LOCK_LIMIT", "1800"))
VALUE_SETS_DOWNLOAD_INTERVAL: float = float(os.getenv("DCC_VALUE_SETS_DOWNLOAD_INTERVAL", "3600"))
VALUE_SETS_LOCK_LIMIT: float = float(os.getenv("DCC_VALUE_SETS_LOCK_LIMIT", "1800"))
SIGNER_CERTIFICATES_DOWNLOAD_INTERVAL: float = float(
    os.getenv("DCC_SIGNER_CERTIFICATES_DOWNLOAD_INTERVAL", "3600")
)
SIGNER_CERTIFICATES_LOCK_LIMIT: float = float(os.getenv("DCC_SIGNER_CERTIFICATES_LOCK_LIMIT", "1800"))

GATEWAY_TIMEOUT_SECONDS: float = float(os.getenv("DCC_GATEWAY_TIMEOUT", "10.0"))

# =============================================================================
# NETWORK
# =============================================================================

HTTP_HOST: str = os.getenv("DCC_HTTP_HOST", "0.0.0.0")
HTTP_PORT: int = int(os.getenv("DCC_HTTP_PORT", "8000"))

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL: str = os.getenv("DCC_LOG_LEVEL", "INFO")
