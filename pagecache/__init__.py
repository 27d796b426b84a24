"""Document page cache: conversion jobs, page records, storage reconciliation and signed URLs."""
