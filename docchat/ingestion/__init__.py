"""Ingestion package: documentation crawling and the crawl -> chunk -> embed -> index job.

See crawler.py for the Firecrawl client and page post-processing, and
pipeline.py for the job executor driven by docchat.crawl_queue.
"""
