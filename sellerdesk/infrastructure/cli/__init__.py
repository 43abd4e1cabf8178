"""Terminal presentation for the sellerdesk command line."""
