# digest_admin: HTTP administration surface for the digest pipeline.
