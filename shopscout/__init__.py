"""ShopScout: discovery and ranking pipeline for shopping want-lists."""
